import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env from the project root (same as the backend modules)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

MIDTRANS_SNAP_SCRIPT_URLS = {
    "production": "https://app.midtrans.com/snap/snap.js",
    "sandbox": "https://app.sandbox.midtrans.com/snap/snap.js",
}

MIDTRANS_CLIENT_KEYS = {
    "production": "Mid-client-8GWOB2qNMTVXD6YC",
    "sandbox": "SB-Mid-client-nKMAqVgSgOIsOQyk",
}


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Client-side settings, read from the environment (and .env)."""

    api_base_url: str = "http://localhost:8000/api/v1"
    http_timeout: float = 10.0

    # Bounded poll used when the widget is unavailable
    poll_interval: float = 10.0
    max_poll_duration: float | None = 600.0

    # Delay before the authoritative check that follows each advisory signal
    success_check_delay: float = 3.0
    pending_check_delay: float = 5.0
    close_check_delay: float = 2.0

    midtrans_environment: str = "sandbox"
    midtrans_client_key: str = MIDTRANS_CLIENT_KEYS["sandbox"]

    log_level: str = "INFO"
    log_json: bool = False

    @property
    def snap_script_url(self) -> str:
        return MIDTRANS_SNAP_SCRIPT_URLS[self.midtrans_environment]

    @property
    def is_production(self) -> bool:
        return self.midtrans_environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        environment = os.getenv("MIDTRANS_ENVIRONMENT", "sandbox").strip().lower()
        if environment not in MIDTRANS_SNAP_SCRIPT_URLS:
            raise RuntimeError(
                f"MIDTRANS_ENVIRONMENT must be 'sandbox' or 'production', got {environment!r}"
            )

        # 0 switches the poll cap off entirely
        max_poll = _float("PAYWALL_MAX_POLL_DURATION", 600.0)

        return cls(
            api_base_url=os.getenv("PAYWALL_API_BASE_URL", cls.api_base_url).rstrip("/"),
            http_timeout=_float("PAYWALL_HTTP_TIMEOUT", 10.0),
            poll_interval=_float("PAYWALL_POLL_INTERVAL", 10.0),
            max_poll_duration=max_poll if max_poll > 0 else None,
            success_check_delay=_float("PAYWALL_SUCCESS_CHECK_DELAY", 3.0),
            pending_check_delay=_float("PAYWALL_PENDING_CHECK_DELAY", 5.0),
            close_check_delay=_float("PAYWALL_CLOSE_CHECK_DELAY", 2.0),
            midtrans_environment=environment,
            midtrans_client_key=os.getenv(
                "MIDTRANS_CLIENT_KEY", MIDTRANS_CLIENT_KEYS[environment]
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_bool("LOG_JSON", False),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
