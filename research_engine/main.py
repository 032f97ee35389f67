from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.logging import configure_logging
from .api.routes_research import router as research_router

configure_logging()
settings = get_settings()

app = FastAPI(title="Research Engine API")


def _split_origins(value: str) -> list[str]:
    return [o.strip() for o in value.split(",") if o.strip()]


# Production never falls back to "*"
if settings.ENV.lower() == "prod":
    if not settings.FRONTEND_ORIGIN:
        raise RuntimeError(
            "FRONTEND_ORIGIN must be set in production; refusing to start with wide-open CORS."
        )
    origins = _split_origins(settings.FRONTEND_ORIGIN)
elif settings.FRONTEND_ORIGIN and not settings.CORS_ALLOW_ALL_ORIGINS:
    origins = _split_origins(settings.FRONTEND_ORIGIN)
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(research_router, prefix=settings.API_PREFIX)


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": settings.SERVICE_NAME}
