"""FastAPI application entry point."""

import logging
import os

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pedagogy_engine.api.routes import router
from pedagogy_engine.config import Settings, get_settings
from pedagogy_engine.content.generator import OpenAIContentGenerator
from pedagogy_engine.session.orchestrator import PedagogyEngine
from pedagogy_engine.storage.json_store import JsonFileStore

# Configure structlog based on environment
is_production = os.getenv("ENV", "development").lower() == "production"

if is_production:
    # Production: JSON format for machine parsing
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
else:
    # Development: console format for human readability
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

logger = structlog.get_logger()


def build_engine(settings: Settings) -> PedagogyEngine:
    """Engine backed by the JSON store; generation is enabled when an API key is set."""
    generator = None
    if settings.openai_api_key:
        generator = OpenAIContentGenerator(api_key=settings.openai_api_key, model=settings.generation_model)
    else:
        logger.warning("content_generation_disabled", reason="no OPENAI_API_KEY")
    return PedagogyEngine(JsonFileStore(settings.data_dir), generator=generator, settings=settings)


def create_app(engine: PedagogyEngine | None = None) -> FastAPI:
    app = FastAPI(title="Pedagogy Engine", version="0.1.0")
    app.state.engine = engine or build_engine(get_settings())
    allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in allowed_origins_env.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def main() -> None:
    """Run the application."""
    settings = get_settings()
    uvicorn.run(
        "pedagogy_engine.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
