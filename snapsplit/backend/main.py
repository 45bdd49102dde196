# snapsplit/backend/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snapsplit.backend.middleware.errors import install_error_handlers
from snapsplit.backend.routes.bills import router as bills_router
from snapsplit.backend.routes.health import router as health_router
from snapsplit.backend.utils.settings import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("snapsplit.main")

app = FastAPI(
    title="SnapSplit Sync",
    version=settings.SNAPSPLIT_VERSION,
    description="Bill sharing delta sync and settlement service",
)

# -------------------------------------------------------------------
# Error handling (stable envelopes, no stack leaks)
# -------------------------------------------------------------------
install_error_handlers(app)

# -------------------------------------------------------------------
# CORS
# -------------------------------------------------------------------
if settings.CORS_MODE == "allowlist":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

# -------------------------------------------------------------------
# Routers
# -------------------------------------------------------------------
app.include_router(health_router)
app.include_router(bills_router)


# -------------------------------------------------------------------
# Root
# -------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "status": "SnapSplit Online",
        "version": settings.SNAPSPLIT_VERSION,
        "store": settings.BILL_STORE,
        "routes": [
            "/health",
            "/bills",
        ],
    }


@app.on_event("startup")
async def startup_event():
    log.info(f"SnapSplit starting: store={settings.BILL_STORE}, cors={settings.CORS_MODE}")
