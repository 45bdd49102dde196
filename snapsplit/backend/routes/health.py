from fastapi import APIRouter, Depends

from snapsplit.backend.deps import get_repository
from snapsplit.backend.utils.envelope import error, ok
from snapsplit.backend.utils.settings import settings

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_root():
    return {"ok": True, "version": settings.SNAPSPLIT_VERSION}


@router.get("/store")
async def health_store(repo=Depends(get_repository)):
    try:
        await repo.ping()
    except Exception as e:
        return error(f"bill store unreachable: {e}", code="STORE_UNAVAILABLE", status=503)
    return ok({"store": settings.BILL_STORE})
