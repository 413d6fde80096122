from fastapi import APIRouter

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Liveness check")
async def ping() -> dict[str, str]:
    return {"status": "ok"}
