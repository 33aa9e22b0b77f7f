from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse
import logging
import os
import time

from db.database import init_db
from routers import receipts, settings
from services.config_service import load_config

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)

logger = logging.getLogger("bonnenmonster")

VERSION = "0.2.0"

app = FastAPI(
    title="Bonnenmonster — Receipt Scanner",
    description="Scan fuel and purchase receipts with AI and store them in Baserow",
    version=VERSION,
)

_cors_origins = os.environ.get("CORS_ORIGINS", "").strip()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins.split(",") if _cors_origins else ["*"],
    allow_credentials=bool(_cors_origins),  # only send credentials when origins are explicit
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(receipts.router, prefix="/api/receipts", tags=["receipts"])
app.include_router(settings.router, prefix="/api/settings", tags=["settings"])

# Serve the PWA build (index.html, manifest, service worker, assets)
FRONTEND_DIR = os.environ.get("FRONTEND_DIR", "/app/frontend")
if os.path.exists(FRONTEND_DIR):
    if os.path.isdir(f"{FRONTEND_DIR}/assets"):
        app.mount("/assets", StaticFiles(directory=f"{FRONTEND_DIR}/assets"), name="assets")

    @app.get("/", include_in_schema=False)
    async def serve_frontend():
        return FileResponse(f"{FRONTEND_DIR}/index.html")

    @app.get("/service-worker.js", include_in_schema=False)
    async def serve_service_worker():
        return FileResponse(f"{FRONTEND_DIR}/service-worker.js", media_type="application/javascript")

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response

@app.on_event("startup")
async def on_startup():
    logger.info("Starting Bonnenmonster v%s  LOG_LEVEL=%s  DB=%s",
                VERSION, LOG_LEVEL, os.environ.get("DB_PATH", "(default)"))
    await init_db()

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/diagnose")
async def diagnose(store=Depends(settings.get_settings_store)):
    """Check that all dependencies are working inside the container."""
    from db.database import DB_PATH
    from services.vision_service import HEIF_AVAILABLE
    results = {}

    # Pillow
    try:
        from PIL import Image
        results["pillow"] = {"ok": True}
    except ImportError as e:
        results["pillow"] = {"ok": False, "error": str(e)}

    # HEIC/HEIF support is optional — report it but don't fail on it
    results["heic_support"] = {"ok": True, "available": HEIF_AVAILABLE}

    # Data dir
    data_dir = os.path.dirname(DB_PATH) or "."
    results["data_dir"] = {
        "ok": os.path.isdir(data_dir),
        "writable": os.access(data_dir, os.W_OK),
        "path": data_dir,
    }

    # Effective keys: saved settings first, env fallback (only report presence)
    config = await load_config(store)
    key = config.analyzer_api_key
    results["anthropic_key"] = {
        "ok": True,
        "set": bool(key),
        "from_env": bool(key) and key == os.environ.get("ANTHROPIC_API_KEY", "").strip(),
        "looks_valid": bool(key and key.startswith("sk-")),
    }
    results["baserow"] = {"ok": True, "configured": config.persistence_configured}

    return {"all_ok": all(v.get("ok") for v in results.values()), "checks": results}
