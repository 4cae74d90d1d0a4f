from pydantic import BaseModel
import os
from pathlib import Path
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode


def normalize_database_url(raw_url: str) -> str:
    """
    Accepts common Postgres/Supabase URI forms and returns a SQLAlchemy-compatible URL.
    - Supports postgres:// and postgresql:// and adds the psycopg2 driver automatically
    - Ensures sslmode=require for Supabase hosts when not provided
    - Leaves non-Postgres URLs unchanged
    """
    if not raw_url:
        return ""
    url = raw_url.strip()

    # Normalize legacy postgres:// to postgresql://
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]

    parsed = urlparse(url)
    scheme = parsed.scheme or ""

    base_scheme = scheme.split("+", 1)[0]
    if base_scheme not in ("postgresql", "postgres"):
        return url

    query_items = dict(parse_qsl(parsed.query, keep_blank_values=True))
    host = parsed.hostname or ""
    if host.endswith(".supabase.co") and "sslmode" not in {k.lower() for k in query_items.keys()}:
        query_items["sslmode"] = "require"

    return urlunparse((
        "postgresql+psycopg2",
        parsed.netloc,
        parsed.path,
        parsed.params,
        urlencode(query_items),
        parsed.fragment,
    ))


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _default_sqlite_url() -> str:
    data_dir = Path.cwd() / "data"
    return f"sqlite:///{data_dir / 'prepaid.db'}"


class Settings(BaseModel):
    """Process configuration.

    Built once by ``create_app`` (usually via ``Settings.from_env``) and handed
    to the components that need it through ``app.state.settings``.
    """

    api_port: int = 8080
    debug: bool = False

    database_url: str = "sqlite:///./data/prepaid.db"
    db_create_all: bool = False

    allowed_origins: list[str] = ["http://localhost:3000"]

    # Bearer token verification
    jwt_secret: str = "change_me_in_production"
    jwt_algorithm: str = "HS256"

    # Stripe (webhook verification only)
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None

    # Top-up provider
    topup_provider_base_url: str = "https://api.dingconnect.com"
    topup_provider_api_key: str | None = None
    topup_provider_timeout_sec: float = 30.0
    topup_webhook_secret: str | None = None
    auto_refund_failed_topups: bool = False

    # Rate limits
    rate_limit_enabled: bool = True
    rate_limit_per_min: int = 60
    rate_limit_per_day: int = 5000

    # Error reporting DSN is carried for deployment parity; nothing reports to it here.
    error_reporting_dsn: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        raw_db_url = os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DB_URL") or ""
        origins_csv = os.getenv("ALLOWED_ORIGINS", os.getenv("DEFAULT_WEB_ORIGIN", "http://localhost:3000"))
        return cls(
            api_port=int(os.getenv("API_PORT", "8080")),
            debug=_env_flag("DEBUG", "false"),
            database_url=normalize_database_url(raw_db_url) or _default_sqlite_url(),
            db_create_all=_env_flag("DB_CREATE_ALL", "0"),
            allowed_origins=[o.strip() for o in origins_csv.split(",") if o.strip()],
            jwt_secret=os.getenv("JWT_SECRET", "change_me_in_production"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            topup_provider_base_url=os.getenv("TOPUP_PROVIDER_BASE_URL", "https://api.dingconnect.com"),
            topup_provider_api_key=os.getenv("TOPUP_PROVIDER_API_KEY"),
            topup_provider_timeout_sec=float(os.getenv("TOPUP_PROVIDER_TIMEOUT_SEC", "30")),
            topup_webhook_secret=os.getenv("TOPUP_WEBHOOK_SECRET"),
            auto_refund_failed_topups=_env_flag("AUTO_REFUND_FAILED_TOPUPS", "0"),
            rate_limit_enabled=_env_flag("RATE_LIMIT_ENABLED", "1"),
            rate_limit_per_min=int(os.getenv("RATE_LIMIT_PER_MIN", "60")),
            rate_limit_per_day=int(os.getenv("RATE_LIMIT_PER_DAY", "5000")),
            error_reporting_dsn=os.getenv("ERROR_REPORTING_DSN") or os.getenv("SENTRY_DSN"),
        )
