"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from compliance_engine.config import get_settings
from compliance_engine.database import engine, Base
from compliance_engine.api.routes import router, compliance_error_handler, request_validation_handler
from compliance_engine.services.errors import ComplianceError
# Import models to register them with SQLAlchemy Base
from compliance_engine.models.domain import ComplianceItem, Gap  # noqa: F401
from compliance_engine.models.audit import AuditEntry  # noqa: F401

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    Base.metadata.create_all(bind=engine)
    logger.info("%s ready", settings.app_name)
    yield


app = FastAPI(
    title="Compliance Engine",
    description="Tracks credential checks, regulatory requirements and standards: "
                "expiry-driven status, risk, remediation gaps and an append-only audit trail.",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ComplianceError, compliance_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

# Include API routes
app.include_router(router, prefix="/api", tags=["Compliance"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
