from slowapi import Limiter
from slowapi.util import get_remote_address

from voicelink.core.config import settings

# Shared limiter, registered on app.state in main.py
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
