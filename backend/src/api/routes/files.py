from fastapi import APIRouter, Depends
from fastapi.responses import Response

from src.api.dependencies.api_key import require_api_key
from src.core.exceptions import NotFoundError
from src.integrations.storage import local as storage
from src.models.orm.api_credential import ApiCredential

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/{key:path}")
async def download_file(
    key: str,
    _: ApiCredential = Depends(require_api_key),
):
    try:
        data = await storage.load(key)
    except ValueError:
        raise NotFoundError("File not found")
    if data is None:
        raise NotFoundError("File not found")
    filename = key.rsplit("/", 1)[-1]
    media_type = "application/pdf" if filename.endswith(".pdf") else "application/octet-stream"
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )
