"""Credential vault adapter.

WHAT:
    Resolves a tenant's decrypted provider secrets, and stores them encrypted.
WHY:
    Sync services only ever need "the Meta token for this tenant"; keeping the
    decryption here means plaintext tokens never travel further than the
    client constructor.

REFERENCES:
    - adchrono/security.py (Fernet)
    - adchrono/models.py:ProviderCredential
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adchrono.deps import get_settings
from adchrono.errors import ConfigurationError
from adchrono.models import ProviderCredential, ProviderEnum
from adchrono.security import decrypt_secret, encrypt_secret
from adchrono.services.meta_ads_client import MetaApiConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSecrets:
    access_token: str
    external_account_id: Optional[str] = None


def store_secrets(
    db: Session,
    tenant_id: UUID,
    provider: ProviderEnum,
    *,
    access_token: str,
    external_account_id: Optional[str] = None,
) -> ProviderCredential:
    """Encrypt and upsert the tenant's secrets for `provider`."""
    ciphertext = encrypt_secret(
        json.dumps({"access_token": access_token}),
        context=f"{provider.value}:{tenant_id}",
    )
    credential = (
        db.query(ProviderCredential)
        .filter(ProviderCredential.provider == provider)
        .first()
    )
    if credential is None:
        credential = ProviderCredential(tenant_id=tenant_id, provider=provider)
        db.add(credential)
    credential.secrets_enc = ciphertext
    credential.external_account_id = external_account_id
    db.commit()
    return credential


def get_decrypted_secrets(
    db: Session,
    tenant_id: UUID,
    provider: ProviderEnum = ProviderEnum.meta,
) -> Optional[ProviderSecrets]:
    """Return the tenant's secrets for `provider`, or None if never connected."""
    credential = (
        db.query(ProviderCredential)
        .filter(ProviderCredential.provider == provider)
        .first()
    )
    if credential is None:
        return None

    try:
        raw = json.loads(decrypt_secret(credential.secrets_enc, context=f"{provider.value}:{tenant_id}"))
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"Stored {provider.value} credentials for tenant {tenant_id} are unreadable") from exc

    access_token = raw.get("access_token") if isinstance(raw, dict) else None
    if not access_token:
        return None
    return ProviderSecrets(access_token=access_token, external_account_id=credential.external_account_id)


def get_meta_api_config(db: Session, tenant_id: UUID) -> MetaApiConfig:
    """Build the Meta client configuration or fail with ConfigurationError."""
    secrets = get_decrypted_secrets(db, tenant_id, ProviderEnum.meta)
    if secrets is None:
        logger.warning("[CREDENTIALS] No Meta credentials for tenant %s", tenant_id)
        raise ConfigurationError(f"Meta is not connected for tenant {tenant_id}")
    return MetaApiConfig(access_token=secrets.access_token, api_version=get_settings().META_API_VERSION)
