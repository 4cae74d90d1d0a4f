import logging
import threading
from time import time as _time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

from prepaid.api.customers import router as customers_router
from prepaid.api.integrations import router as integrations_router
from prepaid.api.pricing import router as pricing_router
from prepaid.api.storefront import router as storefront_router
from prepaid.api.subscriptions import router as subscriptions_router
from prepaid.api.transactions import router as transactions_router
from prepaid.api.wallet import router as wallet_router
from prepaid.api.webhooks import router as webhooks_router
from prepaid.core.config import Settings
from prepaid.core.error_handlers import register_exception_handlers
from prepaid.core.logging import configure_logging
from prepaid.db.async_session import create_engine_from_settings, create_session_factory
from prepaid.db.base import Base
import prepaid.models  # noqa: F401 ensures models are imported for metadata
from prepaid.services.notifications import LoggingNotifier
from prepaid.services.providers.topup_client import TopupProviderClient

logger = logging.getLogger(__name__)

MINUTE_WINDOW = 60.0
DAY_WINDOW = 86400.0


# TODO: Replace in-memory rate limiter with a shared store (e.g., Redis) once the API runs on more than one worker
class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, settings: Settings):
        super().__init__(app)
        self.settings = settings
        self.lock = threading.Lock()
        self.buckets = {}  # key -> {"minute": (window_start_ts, count), "day": (window_start_ts, count)}
        self.last_sweep = _time()

    def _tenant_id(self, request: Request) -> str:
        tid = (request.headers.get("X-Tenant-ID") or "").strip()
        if tid:
            return tid
        host = (request.headers.get("host") or "").split(":")[0]
        # naive subdomain parsing: sub.domain.tld -> sub
        if host and host.count(".") >= 2:
            return host.split(".")[0]
        return "default"

    def _key_for(self, request: Request) -> str:
        # Unverified claims are enough for bucketing; routes verify the token
        auth = request.headers.get("authorization")
        tenant = self._tenant_id(request)
        if auth and auth.lower().startswith("bearer "):
            token = auth.split(" ", 1)[1].strip()
            try:
                claims = jwt.get_unverified_claims(token)
            except JWTError:
                claims = {}
            sub = claims.get("sub") or claims.get("user_id")
            if sub:
                return f"t:{claims.get('org_id') or tenant}|uid:{sub}"
        ip = request.client.host if request.client else "unknown"
        return f"t:{tenant}|ip:{ip}"

    def evict_expired(self, now: float) -> int:
        """Drop buckets whose day window has ended. Caller holds ``self.lock``."""
        expired = [key for key, data in self.buckets.items() if now - data["day"][0] >= DAY_WINDOW]
        for key in expired:
            del self.buckets[key]
        self.last_sweep = now
        return len(expired)

    async def dispatch(self, request: Request, call_next):
        if not self.settings.rate_limit_enabled or request.url.path == "/health":
            return await call_next(request)

        key = self._key_for(request)
        now = _time()
        minute_window = MINUTE_WINDOW
        day_window = DAY_WINDOW

        # Reads get a higher per-minute allowance
        is_get = request.method.upper() == "GET"
        m_limit = self.settings.rate_limit_per_min * (5 if is_get else 1)
        d_limit = self.settings.rate_limit_per_day

        with self.lock:
            if now - self.last_sweep >= minute_window:
                self.evict_expired(now)
            data = self.buckets.get(key, {"minute": (now, 0), "day": (now, 0)})
            m_start, m_count = data["minute"]
            d_start, d_count = data["day"]
            if now - m_start >= minute_window:
                m_start, m_count = now, 0
            if now - d_start >= day_window:
                d_start, d_count = now, 0
            if m_count + 1 > m_limit or d_count + 1 > d_limit:
                if m_count + 1 > m_limit:
                    retry_after = int(max(1, minute_window - (now - m_start)))
                else:
                    retry_after = int(max(1, day_window - (now - d_start)))
                headers = {
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit-Minute": str(m_limit),
                    "X-RateLimit-Remaining-Minute": str(max(0, m_limit - m_count)),
                    "X-RateLimit-Limit-Day": str(d_limit),
                    "X-RateLimit-Remaining-Day": str(max(0, d_limit - d_count)),
                }
                logger.warning("Rate limit exceeded for %s", key)
                return JSONResponse(
                    {
                        "type": "error",
                        "error": {"type": "rate_limit_exceeded", "message": "Rate limit exceeded"},
                    },
                    status_code=429,
                    headers=headers,
                )
            m_count += 1
            d_count += 1
            data["minute"] = (m_start, m_count)
            data["day"] = (d_start, d_count)
            self.buckets[key] = data

        response = await call_next(request)
        response.headers["X-RateLimit-Limit-Minute"] = str(m_limit)
        response.headers["X-RateLimit-Limit-Day"] = str(d_limit)
        return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(title="Prepaid Top-up API")
    engine = create_engine_from_settings(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.topup_client = TopupProviderClient.from_settings(settings)
    app.state.notifier = LoggingNotifier()

    register_exception_handlers(app)

    # CORS should be outermost so it can attach headers to all responses, including errors
    app.add_middleware(RateLimitMiddleware, settings=settings)
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(customers_router)
    app.include_router(transactions_router)
    app.include_router(pricing_router)
    app.include_router(storefront_router)
    app.include_router(subscriptions_router)
    app.include_router(integrations_router)
    app.include_router(webhooks_router)
    app.include_router(wallet_router)

    @app.get("/health")
    def health():
        return JSONResponse({"ok": True}, headers={"Cache-Control": "public, max-age=60"})

    @app.on_event("startup")
    async def on_startup() -> None:
        if settings.db_create_all:
            # Development bootstrap; deployed databases are migrated with Alembic
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.warning("Database tables created from model metadata (DB_CREATE_ALL)")
        logger.info("API ready on port %s", settings.api_port)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await engine.dispose()

    return app


app = create_app()
