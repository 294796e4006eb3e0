"""Provider settings persistence and active-provider resolution."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from voicelink.core.config import settings
from voicelink.models.provider_config import ProviderConfig
from voicelink.providers.base import BaseVoiceProvider
from voicelink.providers.context import ProviderContext
from voicelink.providers.exceptions import DecryptionFailedError
from voicelink.providers.models import WebhookAuthMethod

logger = logging.getLogger(__name__)


def get_provider_row(db: Session, provider: str) -> ProviderConfig | None:
    return db.execute(
        select(ProviderConfig).where(ProviderConfig.provider == provider)
    ).scalar_one_or_none()


def load_provider_config(db: Session, provider: str) -> dict:
    """Return the adapter config dict for a provider.

    Secret fields stay as vault ciphertext; adapters decrypt on demand.
    A provider with no stored row is disabled with no settings.
    """
    row = get_provider_row(db, provider)
    if row is None:
        return {"enabled": False}
    config = dict(row.options or {})
    config.update(row.credentials_encrypted or {})
    config["enabled"] = row.is_enabled
    config["agent_id"] = row.agent_id or ""
    return config


def save_provider_config(
    db: Session,
    context: ProviderContext,
    provider: str,
    *,
    is_enabled: bool | None = None,
    agent_id: str | None = None,
    options: dict | None = None,
    secrets: dict | None = None,
) -> ProviderConfig:
    """Create or update a provider's settings, encrypting secret fields.

    Secret values that are empty strings are removed. Cached adapters for
    this provider are dropped so the next request sees the new settings.

    Raises:
        UnknownProviderError: If provider is not registered.
        ValueError: If a secret is passed under a non-secret name or the
            webhook auth method is invalid.
    """
    constructor = context.registry.constructor_for(provider)
    secret_fields = set(getattr(constructor, "secret_settings", ()))

    options = dict(options or {})
    leaked = secret_fields & set(options)
    if leaked:
        raise ValueError(f"Secret settings must be passed as secrets: {sorted(leaked)}")
    if "webhook_auth_method" in options:
        WebhookAuthMethod(options["webhook_auth_method"])

    secrets = dict(secrets or {})
    unknown = set(secrets) - secret_fields
    if unknown:
        raise ValueError(f"Not secret settings for {provider}: {sorted(unknown)}")

    row = get_provider_row(db, provider)
    if row is None:
        row = ProviderConfig(provider=provider, options={}, credentials_encrypted={})
        db.add(row)

    if is_enabled is not None:
        row.is_enabled = is_enabled
    if agent_id is not None:
        row.agent_id = agent_id
    if options:
        row.options = {**(row.options or {}), **options}
    if secrets:
        credentials = dict(row.credentials_encrypted or {})
        for field, value in secrets.items():
            if value:
                credentials[field] = context.vault.encrypt(value)
            else:
                credentials.pop(field, None)
        row.credentials_encrypted = credentials

    db.commit()
    db.refresh(row)
    context.registry.clear_cache(provider)
    logger.info(
        "Saved %s settings (enabled=%s, secrets updated=%s)",
        provider,
        row.is_enabled,
        sorted(secrets),
    )
    return row


def rotate_provider_credentials(db: Session, context: ProviderContext) -> int:
    """Re-encrypt stored secrets written under an older vault key version.

    A secret that cannot be decrypted is logged and left as is; the adapter
    still fails loudly when it needs it. Returns the number of secrets rotated.
    """
    rotated = 0
    for row in db.execute(select(ProviderConfig)).scalars().all():
        credentials = dict(row.credentials_encrypted or {})
        changed = {}
        for field, ciphertext in credentials.items():
            try:
                if context.vault.needs_rotation(ciphertext):
                    changed[field] = context.vault.rotate(ciphertext)
            except DecryptionFailedError as exc:
                logger.error("Cannot rotate %s %s: %s", row.provider, field, exc)
        if changed:
            row.credentials_encrypted = {**credentials, **changed}
            context.registry.clear_cache(row.provider)
            rotated += len(changed)
            logger.info(
                "Rotated %s secret(s) to key version %d: %s",
                row.provider,
                context.vault.current_version,
                sorted(changed),
            )
    db.commit()
    return rotated


def resolve_active_provider(db: Session) -> str | None:
    """Pick the provider the widget should use.

    The configured VOICE_PROVIDER wins if its row is enabled. Otherwise the
    first enabled provider (by name) is used. Returns None when voice is
    switched off or nothing is enabled.
    """
    if not settings.VOICE_ENABLED:
        return None

    preferred = get_provider_row(db, settings.VOICE_PROVIDER)
    if preferred is not None and preferred.is_enabled:
        return preferred.provider

    fallback = db.execute(
        select(ProviderConfig.provider)
        .where(ProviderConfig.is_enabled.is_(True))
        .order_by(ProviderConfig.provider)
        .limit(1)
    ).scalar_one_or_none()
    if fallback is not None:
        logger.debug(
            "Preferred provider %s is not enabled, using %s", settings.VOICE_PROVIDER, fallback
        )
    return fallback


def get_provider(db: Session, context: ProviderContext, provider: str) -> BaseVoiceProvider:
    """Build (or fetch from cache) the adapter for a provider's stored settings.

    Raises:
        UnknownProviderError: If provider is not registered.
    """
    context.registry.constructor_for(provider)
    return context.create(provider, load_provider_config(db, provider))
