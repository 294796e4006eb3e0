from voicelink.models.job import Job
from voicelink.models.provider_config import ProviderConfig
from voicelink.models.webhook_record import WebhookRecord

__all__ = [
    "Job",
    "ProviderConfig",
    "WebhookRecord",
]
