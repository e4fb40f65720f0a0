from __future__ import annotations

# ── Logging ──────────────────────────────────────────────────────────────────
import logging, logging.config
from .config import settings

_LEVEL = (settings.LOG_LEVEL or "INFO").upper()
logging.config.dictConfig({
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"std": {"format": "%(levelname)s  %(name)s: %(message)s"}},
    "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "std"}},
    "loggers": {
        "sqlalchemy":        {"level": "WARNING", "handlers": ["console"], "propagate": False},
        "sqlalchemy.engine": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        "sqlalchemy.pool":   {"level": "WARNING", "handlers": ["console"], "propagate": False},
        "streams":           {"level": _LEVEL,    "handlers": ["console"], "propagate": False},
        "ffmpeg":            {"level": _LEVEL,    "handlers": ["console"], "propagate": False},
        "janitor":           {"level": _LEVEL,    "handlers": ["console"], "propagate": False},
        "events":            {"level": _LEVEL,    "handlers": ["console"], "propagate": False},
        "vendor":            {"level": _LEVEL,    "handlers": ["console"], "propagate": False},
        "camwatch.db":       {"level": _LEVEL,    "handlers": ["console"], "propagate": False},
    },
})

# ── Windows event loop policy (subprocess pipes need the proactor loop)
import sys, asyncio
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

# ── FastAPI ──────────────────────────────────────────────────────────────────
from pathlib import Path
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from starlette.middleware.cors import CORSMiddleware

from .database import init_db, dispose_engine
from .registry import StreamRegistry
from .streams_api import router as streams_router, ws_router as streams_ws_router

log = logging.getLogger("streams")

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

_origins = [o.strip() for o in (settings.ALLOW_ORIGINS or "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,          # empty keeps same-origin
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Segments are read straight off disk; the registry owns the directory tree
HLS_ROOT = Path(settings.HLS_PATH)
HLS_ROOT.mkdir(parents=True, exist_ok=True)
app.mount(settings.HLS_URL_PREFIX, StaticFiles(directory=str(HLS_ROOT), check_dir=False), name="hls")

app.include_router(streams_router)
app.include_router(streams_ws_router)


# ── Lifecycle ────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup_event():
    await init_db()
    # tests (and embedders) may install their own registry before startup
    if getattr(app.state, "streams", None) is None:
        app.state.streams = StreamRegistry(HLS_ROOT)
    await app.state.streams.initialize()
    log.info("%s listening on %s:%s", settings.APP_NAME, settings.HOST, settings.PORT)


@app.on_event("shutdown")
async def shutdown_event():
    reg = getattr(app.state, "streams", None)
    if reg is not None:
        await reg.shutdown()
    await dispose_engine()


@app.get("/health")
async def health_check():
    reg = getattr(app.state, "streams", None)
    return {
        "status": "healthy",
        "service": "camwatch",
        "streams": len(reg) if reg is not None else 0,
    }
