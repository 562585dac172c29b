"""FastAPI application for the IME booking portal."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from ime_portal.core.config import settings
from ime_portal.core.rate_limit import limiter
from ime_portal.core.structured_logging import build_log_context
from ime_portal.db.session import engine
from ime_portal.routers import bookings, internal, webhooks

logger = logging.getLogger(__name__)

# Sentry only outside dev; examinee data is PHI so no default PII
if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
    )
    logger.info("Sentry initialized for %s", settings.ENV)


app = FastAPI(
    title="IME Portal API",
    description="Multi-tenant independent medical examination booking API",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Cookies need credentials; the CSRF header must be allowed cross-origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Requested-With"],
)


@app.middleware("http")
async def log_unhandled_errors(request: Request, call_next):
    """Log unhandled exceptions with the route only (URLs may carry ids, never PHI)."""
    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception(
            "Unhandled %s",
            type(exc).__name__,
            extra=build_log_context(route=request.url.path, method=request.method),
        )
        raise


app.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
# Acuity automation, shared-secret header
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
# Operator endpoints, INTERNAL_SECRET header
app.include_router(internal.router)


@app.get("/health")
def health():
    """Database connectivity plus environment and version."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
