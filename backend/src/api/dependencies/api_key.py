from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.database import get_db
from src.models.orm.api_credential import ApiCredential
from src.services.request_auth import authenticate, authenticate_key_only


async def require_signed_request(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_signature: str | None = Header(default=None, alias="X-Signature"),
    x_timestamp: str | None = Header(default=None, alias="X-Timestamp"),
    db: AsyncSession = Depends(get_db),
) -> ApiCredential:
    # The signature covers the exact bytes on the wire
    raw_body = await request.body()
    credential = await authenticate(db, x_api_key, x_signature, x_timestamp, raw_body)
    request.state.credential = credential
    return credential


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db),
) -> ApiCredential:
    credential = await authenticate_key_only(db, x_api_key)
    request.state.credential = credential
    return credential
