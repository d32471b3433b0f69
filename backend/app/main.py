import logging.config

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.services.events import get_event_dispatcher
from chirp.realtime.managers import shutdown_realtime, startup_realtime


def build_logging_config(level: str, *, debug: bool = False) -> dict:
    """Single stream handler on the root logger; module loggers propagate to it."""

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
            }
        },
        "root": {
            "handlers": ["default"],
            "level": "DEBUG" if debug else level.upper(),
        },
    }


settings = get_settings()

logging.config.dictConfig(build_logging_config(settings.log_level, debug=settings.debug))

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_origin_regex=settings.cors_allow_origin_regex,
)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok", "environment": settings.environment}


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await get_event_dispatcher().drain()
    await shutdown_realtime()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
