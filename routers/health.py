from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from logging_config import get_logger

logger = get_logger(__name__)

health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health(request: Request):
    redis_ok = await request.app.state.backend.ping()
    if not redis_ok:
        logger.warning("Health check failed: Redis unreachable")
        return JSONResponse(status_code=503, content={"status": "degraded", "redis": False})
    return {"status": "ok", "redis": True}
