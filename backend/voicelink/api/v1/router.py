from fastapi import APIRouter

from voicelink.api.v1.endpoints import chat, jobs, providers, tokens, webhooks

api_v1_router = APIRouter()

api_v1_router.include_router(providers.router, prefix="/voice", tags=["providers"])
api_v1_router.include_router(tokens.router, prefix="/voice", tags=["tokens"])
api_v1_router.include_router(webhooks.router, prefix="/voice", tags=["webhooks"])
api_v1_router.include_router(chat.router, prefix="/voice", tags=["chat"])
api_v1_router.include_router(jobs.router, prefix="/voice/jobs", tags=["jobs"])
