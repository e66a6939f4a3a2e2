from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    database: str
    version: str | None = None
    checks: dict[str, dict] = {}
