import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.responses import Response

from api.admin import router as admin_router
from api.leaderboard import router as leaderboard_router
from api.routes import router
from api.stats import router as stats_router
from api.users import router as users_router
from domain.errors import BettingError, ErrorKind
from infra.monitoring import prometheus_metrics
from infra.settings import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.DUPLICATE_SUBMISSION: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.DAILY_LIMIT: 429,
    ErrorKind.STORE_UNAVAILABLE: 503,
    ErrorKind.CACHE_UNAVAILABLE: 503,
}

app = FastAPI(
    title="Crypto Up/Down Betting API",
    description="Bet lifecycle, leaderboards and statistics for up/down price bets",
    version="0.3.0"
)

# Include routers
app.include_router(router)
app.include_router(leaderboard_router)
app.include_router(stats_router)
app.include_router(users_router)
app.include_router(admin_router)


@app.exception_handler(BettingError)
async def betting_error_handler(request: Request, exc: BettingError):
    return JSONResponse(status_code=STATUS_BY_KIND.get(exc.kind, 500), content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(location) or "request", "message": error.get("msg", "invalid")})
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": ErrorKind.VALIDATION.value,
            "message": "Validation error",
            "retryable": False,
            "details": details,
        },
    )


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(prometheus_metrics.export(), media_type=CONTENT_TYPE_LATEST)
