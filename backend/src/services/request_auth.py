import logging
import time
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.exceptions import (
    InvalidCredentialError,
    InvalidSignatureError,
    MissingCredentialError,
    NotFoundError,
    RequestExpiredError,
)
from src.core.security import (
    KEY_PREFIX_LENGTH,
    compute_signature,
    generate_api_key,
    generate_signing_secret,
    hash_api_key,
    verify_signature,
)
from src.models.orm.api_credential import ApiCredential
from src.repositories import api_credential_repo

logger = logging.getLogger(__name__)


def _parse_timestamp(timestamp: str) -> int:
    try:
        return int(timestamp.strip())
    except (ValueError, AttributeError):
        raise RequestExpiredError("Request timestamp is not a unix timestamp") from None


def check_freshness(timestamp: str, *, now: float | None = None) -> None:
    """Reject timestamps more than request_max_age_seconds away from now (inclusive bound)."""
    ts = _parse_timestamp(timestamp)
    current = time.time() if now is None else now
    if abs(current - ts) > settings.request_max_age_seconds:
        raise RequestExpiredError()


async def _lookup_credential(db: AsyncSession, api_key: str) -> ApiCredential:
    credential = await api_credential_repo.get_active_by_key_hash(db, hash_api_key(api_key))
    if not credential:
        logger.warning("Rejected request with unknown API key %s...", api_key[:KEY_PREFIX_LENGTH])
        raise InvalidCredentialError()
    return credential


async def authenticate(
    db: AsyncSession,
    api_key: str | None,
    signature: str | None,
    timestamp: str | None,
    raw_body: bytes | str,
    *,
    now: float | None = None,
) -> ApiCredential:
    """Authenticate a signed partner request and return its credential."""
    if not api_key:
        raise MissingCredentialError("X-API-Key header is required")
    if not signature or not timestamp:
        raise MissingCredentialError("X-Signature and X-Timestamp headers are required")

    check_freshness(timestamp, now=now)
    credential = await _lookup_credential(db, api_key)

    if not verify_signature(credential.secret, timestamp.strip(), raw_body, signature):
        logger.warning("Invalid signature for credential %s", credential.id)
        raise InvalidSignatureError()

    await api_credential_repo.touch_last_used(db, credential.id)
    return credential


async def authenticate_key_only(db: AsyncSession, api_key: str | None) -> ApiCredential:
    """Key check for read-only endpoints; no signature or freshness window."""
    if not api_key:
        raise MissingCredentialError("X-API-Key header is required")
    credential = await _lookup_credential(db, api_key)
    await api_credential_repo.touch_last_used(db, credential.id)
    return credential


def sign_request(secret: str, body: bytes | str, timestamp: int | None = None) -> dict[str, str]:
    """Build the X-Timestamp/X-Signature headers a partner sends with ``body``."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return {"X-Timestamp": ts, "X-Signature": compute_signature(secret, ts, body)}


async def issue_credential(
    db: AsyncSession, display_name: str
) -> tuple[ApiCredential, str, str]:
    """Create a credential and return (credential, api_key, secret).

    The plain key and secret are only available here; the key is stored hashed.
    """
    api_key = generate_api_key()
    secret = generate_signing_secret()
    credential = ApiCredential(
        display_name=display_name,
        key_hash=hash_api_key(api_key),
        key_prefix=api_key[:KEY_PREFIX_LENGTH],
        secret=secret,
        is_active=True,
    )
    db.add(credential)
    await db.flush()
    logger.info("Issued API credential %s for %s", credential.key_prefix, display_name)
    return credential, api_key, secret


async def rotate_credential(
    db: AsyncSession, credential_id: UUID
) -> tuple[ApiCredential, str, str]:
    """Deactivate a credential and issue its replacement."""
    old = await api_credential_repo.get_by_id(db, credential_id)
    if not old:
        raise NotFoundError("API credential not found")
    old.is_active = False
    old.revoked_at = datetime.now(timezone.utc)
    return await issue_credential(db, old.display_name)
