import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import AuthConfig, FastApiMCP
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from renewal_engine.core.config import get_settings
from renewal_engine.core.errors import BillingError
from renewal_engine.core.limiter import limiter
from renewal_engine.middleware.auth import get_current_user
from renewal_engine.routers import recurring_items_router, subscription_router, webhooks_router

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="Subscription billing reconciliation for Stripe and App Store renewals.",
    version="1.0.0"
)

# Rate limiting through per-endpoint @limiter.limit() decorators only:
# the SlowAPI middlewares break SSE, which the MCP mount relies on.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks_router)
app.include_router(subscription_router)
app.include_router(recurring_items_router)


@app.get("/health")
def health():
    return {"status": "ok"}


# MCP server at /mcp exposing the client endpoints as tools. Webhook routes are
# excluded from the OpenAPI schema and therefore never become tools.
mcp = FastApiMCP(
    app,
    auth_config=AuthConfig(
        dependencies=[Depends(get_current_user)],
    ),
    headers=["authorization"],
)
mcp.mount()
