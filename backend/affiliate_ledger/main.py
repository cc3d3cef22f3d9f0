import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from affiliate_ledger.core.config import settings
from affiliate_ledger.core.errors import InvalidStateTransition, LedgerStorageError, PlanAssignmentOverlapError
from affiliate_ledger.core.logging_config import configure_logging
import affiliate_ledger.models  # noqa: F401  # force model registration

from affiliate_ledger.api.v1.ledger import router as ledger_router
from affiliate_ledger.api.v1.reports import router as reports_router

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Affiliate Ledger API")

    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(LedgerStorageError)
    async def storage_failure(request: Request, exc: LedgerStorageError):
        # already logged with the rollback; callers retry
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": {"code": "ledger_storage_failure", "message": str(exc)}},
        )

    @app.exception_handler(PlanAssignmentOverlapError)
    async def plan_overlap(request: Request, exc: PlanAssignmentOverlapError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": {
                    "code": "plan_assignment_overlap",
                    "message": str(exc),
                    "conflicting_assignment_id": str(exc.conflicting_assignment_id),
                }
            },
        )

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition(request: Request, exc: InvalidStateTransition):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": {
                    "code": "invalid_state_transition",
                    "message": str(exc),
                    "current": exc.current,
                    "target": exc.target,
                }
            },
        )

    @app.get("/")
    def root():
        return {"status": "ok", "service": "affiliate-ledger"}

    # Routers
    app.include_router(ledger_router, prefix="/api/v1")
    app.include_router(reports_router, prefix="/api/v1")

    logger.info("Affiliate ledger API ready", extra={"ledger": {"environment": settings.ENVIRONMENT}})
    return app


app = create_application()
