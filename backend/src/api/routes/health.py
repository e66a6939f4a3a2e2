from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.database import get_db
from src.models.dto.health import HealthResponse
from src.services.health_service import get_health

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    body, status_code = await get_health(db)
    if status_code != 200:
        return JSONResponse(status_code=status_code, content=body)
    return body
