"""
FastAPI application
"""
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import settings
from .dependencies import get_engine
from .routes import flows_router, conversations_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.APP_NAME,
        description="Flow Core - guarded conversational onboarding flows",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(flows_router, prefix="/api")
    app.include_router(conversations_router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "name": settings.APP_NAME,
            "version": "1.0.0",
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {"status": "ok"}

    @app.on_event("startup")
    async def startup():
        """Startup event"""
        logger.info(f"Starting {settings.APP_NAME}...")

        # Load and validate flow definitions (an invalid flow aborts the boot)
        engine = get_engine()
        logger.info(f"Loaded {len(engine.flows)} flows")

    return app


# Create app instance
app = create_app()
