from fastapi import APIRouter

from sessioncut import __version__


router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"ok": True, "version": __version__}
