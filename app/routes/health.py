from fastapi import APIRouter, Request
from sqlalchemy import text

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check(request: Request):
    """Basic health check"""
    response = {"status": "healthy", "service": "Dealer Stock Sync"}
    limits_cache = getattr(request.app.state, "limits_cache", None)
    temp_data_cache = getattr(request.app.state, "temp_data_cache", None)
    if limits_cache is not None and temp_data_cache is not None:
        response["caches"] = [limits_cache.stats(), temp_data_cache.stats()]
    return response

@router.get("/health/db")
async def database_health():
    """Check database connectivity"""
    try:
        from app.database import async_session

        async with async_session() as session:
            await session.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "database": "connected"
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "error",
            "error": str(e)
        }
