import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import Base, check_database, engine, get_db
from app.core.errors import register_exception_handlers
from app.api.routes import auth, users
from app.services.rate_limiter import limiter

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage app lifecycle events.

    Startup: Create missing tables
    Shutdown: Release pooled connections
    """
    # In production, use migrations (Alembic) instead of create_all
    Base.metadata.create_all(bind=engine)
    logger.info(f"{settings.APP_NAME} API started ({settings.ENVIRONMENT})")
    yield
    engine.dispose()


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Accounts, email verification and token auth for the recipe app",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware - allows frontend to make requests to backend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Per-IP limit on every /api route; counters and defaults come from app.services.rate_limiter
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

register_exception_handlers(app)

# Register API route modules
# All routes are prefixed with /api for consistency
app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api")


@limiter.exempt
@app.get("/")
async def root():
    """Root endpoint - API information"""
    return {"message": f"{settings.APP_NAME} API", "version": "1.0.0"}


@limiter.exempt
@app.get("/health")
async def health(db: Session = Depends(get_db)):
    """Health check endpoint - reports database reachability"""
    database = check_database(db)
    healthy = database["status"] == "healthy"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "success" if healthy else "warning",
            "message": "Server and database are running" if healthy else "Server running, database issues detected",
            "environment": settings.ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": database,
        },
    )
