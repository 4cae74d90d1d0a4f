import logging
import sys

from prepaid.core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure root logging for the API process.

    DEBUG enables verbose logs on stdout; otherwise only warnings and above
    are shown to avoid noise.
    """
    debug_enabled = settings.debug

    root = logging.getLogger()
    root.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.DEBUG)

    root.setLevel(logging.DEBUG if debug_enabled else logging.WARNING)
    root.addHandler(stream_handler)

    # Quiet noisy third-party loggers in non-debug mode
    if not debug_enabled:
        for noisy in ("uvicorn", "uvicorn.access", "sqlalchemy.engine"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def mask_phone(phone: str | None) -> str:
    """Render a phone number for log lines, keeping only the last 4 digits."""
    if not phone:
        return "-"
    digits = phone.strip()
    if len(digits) <= 4:
        return "***"
    return "***" + digits[-4:]
