import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI

from agents.subscription_agent.service import ServiceSettings, SubscriptionAgentService
from agents.subscription_agent.supervisor import SupervisorSettings
from routers.subscription_agent import create_subscription_router


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("subscription_runner")

# Add-ons always mount /data for persistence.
DATA_DIR = Path(os.getenv("DATA_DIR", "/data")).resolve()
DATA_DIR.mkdir(parents=True, exist_ok=True)


def _load_addon_options() -> Dict[str, Any]:
    """Load persisted add-on options from <DATA_DIR>/options.json."""
    options_path = DATA_DIR / "options.json"
    if not options_path.exists():
        logger.info("No options.json; using environment variables or defaults")
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
        logger.info("Add-on options loaded from %s", options_path)
        return options if isinstance(options, dict) else {}
    except Exception:
        logger.exception("Could not parse %s; using defaults", options_path)
        return {}


ADDON_OPTIONS = _load_addon_options()


def _setting(name: str, default: str = "") -> str:
    """Environment first (upper-case), then options.json (lower-case)."""
    env_name = name.upper()
    if env_name in os.environ:
        return os.getenv(env_name, default)
    return str(ADDON_OPTIONS.get(name.lower(), default))


def _int_setting(name: str, default: int) -> int:
    raw = _setting(name, str(default)).strip()
    try:
        return int(float(raw))
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default


def _bool_setting(name: str, default: bool) -> bool:
    raw = _setting(name, "true" if default else "false").strip().lower()
    return raw in ("1", "true", "yes", "on")


JOB_SECRET = _setting("job_secret", "")
TIMEZONE = _setting("timezone", "Europe/Madrid")

SUPERVISOR_SETTINGS = SupervisorSettings(
    management_url=_setting("management_url", "https://www.youtube.com/paid_memberships"),
    workflow_timeout_ms=_int_setting("workflow_timeout_ms", 300_000),
    stagnation_refresh_s=_int_setting("stagnation_refresh_s", 60),
    stagnation_skip_s=_int_setting("stagnation_skip_s", 120),
    watchdog_poll_s=_int_setting("watchdog_poll_s", 10),
    confirmation_timeout_ms=_int_setting("confirmation_timeout_ms", 12_000),
    step_retries=_int_setting("step_retries", 3),
    ip_echo_url=_setting("ip_echo_url", "https://api.ipify.org"),
)

SERVICE_SETTINGS = ServiceSettings(
    browser_backend=_setting("browser_backend", "adspower"),
    adspower_api_url=_setting("adspower_api_url", "http://127.0.0.1:50325"),
    auth_mode=_setting("auth_mode", "session"),
    webhook_url_status=_setting("webhook_url_status", ""),
    webhook_url_final=_setting("webhook_url_final", ""),
    max_parallel_runs=_int_setting("max_parallel_runs", 3),
    date_year_min=_int_setting("date_year_min", 2020),
    date_year_max=_int_setting("date_year_max", 2035),
    events_retention_days=_int_setting("events_retention_days", 30),
    results_retention_days=_int_setting("results_retention_days", 90),
    headless=_bool_setting("headless", True),
    supervisor=SUPERVISOR_SETTINGS,
)


def _apply_timezone() -> None:
    """Set the process timezone used for local dates."""
    os.environ["TZ"] = TIMEZONE
    if hasattr(time, "tzset"):
        time.tzset()
    logger.info("Timezone applied: %s", TIMEZONE)


_apply_timezone()


def _missing_config() -> List[str]:
    missing = []
    if not SUPERVISOR_SETTINGS.management_url:
        missing.append("management_url")
    if SERVICE_SETTINGS.browser_backend == "adspower" and not SERVICE_SETTINGS.adspower_api_url:
        missing.append("adspower_api_url")
    if SERVICE_SETTINGS.browser_backend not in ("adspower", "local"):
        missing.append("browser_backend")
    if SERVICE_SETTINGS.auth_mode not in ("session", "credentials"):
        missing.append("auth_mode")
    return missing


SERVICE = SubscriptionAgentService(DATA_DIR, SERVICE_SETTINGS, logging.getLogger("subscription_runner.service"))

APP = FastAPI(title="Subscription Runner")
APP.include_router(create_subscription_router(SERVICE, JOB_SECRET, _missing_config))


@APP.get("/health")
def health():
    """Liveness plus the effective configuration (no secrets)."""
    return {
        "ok": True,
        "data_dir": str(DATA_DIR),
        "has_job_secret": bool(JOB_SECRET),
        "has_webhook_status": bool(SERVICE_SETTINGS.webhook_url_status),
        "has_webhook_final": bool(SERVICE_SETTINGS.webhook_url_final),
        "browser_backend": SERVICE_SETTINGS.browser_backend,
        "auth_mode": SERVICE_SETTINGS.auth_mode,
        "timezone": TIMEZONE,
        "missing_config": _missing_config(),
        "jobs": sorted(SERVICE.list_jobs().keys()),
    }
