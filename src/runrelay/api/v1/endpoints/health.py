from fastapi import APIRouter

from runrelay import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "runrelay", "version": __version__}
