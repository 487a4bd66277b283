import logging
import re
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

import httpx

from agents.subscription_agent.driver import PlaywrightDriver
from agents.subscription_agent.errors import (
    ConnectionExhausted,
    ConnectionFailed,
    IdentifierUnknown,
)
from agents.subscription_agent.models import ConnectionAttempt, ConnectionResult

# Characters that never appear in a profile id but do in passwords pasted
# into the wrong column.
_INVALID_ID_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>\s]")

_UNKNOWN_PROFILE_MARKERS = (
    "profile does not exist",
    "none exists",
    "profile_id is required",
    "user_id is required",
    "not found",
)

SheetLookup = Callable[[str], Iterable[str]]


class BrowserSession:
    """A browser opened for one run; owned exclusively by that run.

    ``abort`` may be called from the watchdog thread and only touches the
    remote side. ``close`` runs on the owning thread. The underlying
    resource is released exactly once whichever is called first.
    """

    def __init__(
        self,
        identifier: str,
        driver: Any,
        *,
        release_remote: Optional[Callable[[], None]] = None,
        close_local: Optional[Callable[[], None]] = None,
        logger=None,
    ) -> None:
        self.identifier = identifier
        self.driver = driver
        self._release_remote = release_remote
        self._close_local = close_local
        self._logger = logger or logging.getLogger("subscription_runner.session")
        self._lock = threading.Lock()
        self._released = False
        self._closed = False
        self.release_count = 0

    @property
    def released(self) -> bool:
        return self._released

    def _release_once(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            self.release_count += 1
        if self._release_remote is None:
            return
        try:
            self._release_remote()
        except Exception:
            self._logger.exception("Failed to release browser profile %s", self.identifier)

    def abort(self) -> None:
        self._logger.warning("Aborting browser session for profile %s", self.identifier)
        self._release_once()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._close_local is not None:
            try:
                self._close_local()
            except Exception:
                self._logger.warning("Local browser handles for %s were already gone", self.identifier)
        self._release_once()


class AdsPowerConnector:
    """Opens AdsPower profiles through the local API and attaches over CDP."""

    def __init__(self, playwright, api_url: str, logger, *, timeout_s: float = 60.0, driver_options=None) -> None:
        self.playwright = playwright
        self.api_url = api_url.rstrip("/")
        self.logger = logger
        self.timeout_s = timeout_s
        self.driver_options = dict(driver_options or {})

    @staticmethod
    def _is_unknown_profile(message: str) -> bool:
        lowered = str(message or "").lower()
        return any(marker in lowered for marker in _UNKNOWN_PROFILE_MARKERS)

    def _api_get(self, path: str, params: dict) -> dict:
        response = httpx.get(f"{self.api_url}{path}", params=params, timeout=self.timeout_s)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError(f"Unexpected AdsPower response for {path}")
        return payload

    def open(self, identifier: str) -> BrowserSession:
        payload = self._api_get("/api/v1/browser/start", {"user_id": identifier, "open_tabs": 0})
        if payload.get("code") != 0:
            message = str(payload.get("msg", ""))
            if self._is_unknown_profile(message):
                raise IdentifierUnknown(message)
            raise RuntimeError(f"AdsPower refused to start {identifier}: {message}")

        data = payload.get("data") or {}
        ws_endpoint = str((data.get("ws") or {}).get("puppeteer", ""))
        if not ws_endpoint:
            self.stop(identifier)
            raise RuntimeError(f"AdsPower returned no CDP endpoint for {identifier}")

        try:
            browser = self.playwright.chromium.connect_over_cdp(ws_endpoint)
        except Exception:
            self.stop(identifier)
            raise
        context = browser.contexts[0] if browser.contexts else browser.new_context()
        page = context.pages[0] if context.pages else context.new_page()
        self.logger.info("AdsPower profile %s attached over CDP", identifier)
        return BrowserSession(
            identifier,
            PlaywrightDriver(page, self.logger, **self.driver_options),
            release_remote=lambda: self.stop(identifier),
            close_local=browser.close,
            logger=self.logger,
        )

    def stop(self, identifier: str) -> None:
        try:
            self._api_get("/api/v1/browser/stop", {"user_id": identifier})
            self.logger.info("AdsPower profile %s stopped", identifier)
        except Exception:
            self.logger.exception("Failed to stop AdsPower profile %s", identifier)


class LocalProfileConnector:
    """Launches Chromium locally with a saved storage_state per profile."""

    def __init__(self, playwright, data_dir: Path, logger, *, headless: bool = True, driver_options=None) -> None:
        self.playwright = playwright
        self.storage_dir = Path(data_dir) / "storage"
        self.logger = logger
        self.headless = headless
        self.driver_options = dict(driver_options or {})

    def storage_path(self, identifier: str) -> Path:
        return self.storage_dir / f"{identifier}.json"

    def _ensure_playwright_browsers(self) -> bool:
        command = [sys.executable, "-m", "playwright", "install", "chromium"]
        self.logger.warning("Chromium not found; attempting automatic install")
        try:
            subprocess.run(command, check=True, timeout=900, text=True, capture_output=True)
            self.logger.info("Automatic Chromium install completed")
            return True
        except Exception:
            self.logger.exception("Could not install Chromium at runtime")
            return False

    def _launch_browser(self):
        try:
            return self.playwright.chromium.launch(headless=self.headless)
        except Exception as err:
            if "Executable doesn't exist" not in str(err):
                raise
            if not self._ensure_playwright_browsers():
                raise
            return self.playwright.chromium.launch(headless=self.headless)

    def open(self, identifier: str) -> BrowserSession:
        storage_path = self.storage_path(identifier)
        if not storage_path.exists():
            raise IdentifierUnknown(f"Profile does not exist: {identifier}")

        browser = self._launch_browser()
        context = browser.new_context(storage_state=str(storage_path))
        page = context.new_page()
        self.logger.info("Local profile %s opened from %s", identifier, storage_path)

        def _close_local() -> None:
            try:
                context.storage_state(path=str(storage_path))
            finally:
                context.close()
                browser.close()

        # No release_remote: sync Playwright handles belong to the thread that
        # opened them, so abort() from the watchdog cannot close this browser.
        # A blocked goto runs until its own timeout, which the supervisor
        # clips to the remaining run budget.
        return BrowserSession(
            identifier,
            PlaywrightDriver(page, self.logger, **self.driver_options),
            close_local=_close_local,
            logger=self.logger,
        )


class ConnectionResolver:
    """Gets a browser session for an account, falling back to alternate ids.

    The primary id is tried once unless it is missing or looks like a
    credential. An "unknown profile" answer moves on to the ids returned by
    the sheet lookup; any other failure of the primary is reported as
    ConnectionFailed for the caller to retry. No id is tried twice within
    one ``resolve`` call.
    """

    def __init__(self, connector, logger=None, clock: Callable[[], float] = time.time) -> None:
        self.connector = connector
        self.logger = logger or logging.getLogger("subscription_runner.connection")
        self.clock = clock

    @staticmethod
    def is_valid_identifier(value: Optional[str]) -> bool:
        candidate = str(value or "").strip()
        if not candidate:
            return False
        return _INVALID_ID_RE.search(candidate) is None

    def _attempt(self, identifier: str, attempts: List[ConnectionAttempt]):
        try:
            handle = self.connector.open(identifier)
        except IdentifierUnknown as exc:
            attempts.append(ConnectionAttempt(identifier, "not_found", self.clock(), str(exc)))
            self.logger.warning("Profile %s is unknown to the browser backend", identifier)
            raise
        except Exception as exc:
            attempts.append(ConnectionAttempt(identifier, "error", self.clock(), str(exc)))
            raise
        attempts.append(ConnectionAttempt(identifier, "success", self.clock()))
        return handle

    def resolve(
        self,
        primary_id: Optional[str],
        account_email: str = "",
        sheet_lookup: Optional[SheetLookup] = None,
    ) -> ConnectionResult:
        attempts: List[ConnectionAttempt] = []
        tried = set()
        primary = str(primary_id or "").strip()

        if self.is_valid_identifier(primary):
            tried.add(primary)
            try:
                handle = self._attempt(primary, attempts)
                return ConnectionResult(handle=handle, used_id=primary, attempts=attempts)
            except IdentifierUnknown:
                pass
            except Exception as exc:
                self.logger.warning("Primary profile %s failed: %s", primary, exc)
                raise ConnectionFailed(f"Profile {primary} could not be opened: {exc}", attempts) from exc
        elif primary:
            self.logger.warning("Primary profile id looks invalid; going straight to fallback search")
        else:
            self.logger.info("No primary profile id; going straight to fallback search")

        for candidate in self._alternates(account_email, sheet_lookup):
            if candidate in tried:
                continue
            tried.add(candidate)
            try:
                handle = self._attempt(candidate, attempts)
            except IdentifierUnknown:
                continue
            except Exception as exc:
                self.logger.warning("Fallback profile %s failed: %s", candidate, exc)
                continue
            self.logger.info("Connected with fallback profile %s", candidate)
            return ConnectionResult(handle=handle, used_id=candidate, attempts=attempts)

        raise ConnectionExhausted(
            f"All {len(attempts)} profile candidates failed",
            attempts=attempts,
        )

    def _alternates(self, account_email: str, sheet_lookup: Optional[SheetLookup]) -> List[str]:
        if sheet_lookup is None or not account_email:
            return []
        try:
            found = list(sheet_lookup(account_email) or [])
        except Exception:
            self.logger.exception("Fallback profile lookup failed")
            return []
        alternates: List[str] = []
        for value in found:
            candidate = str(value or "").strip()
            if not self.is_valid_identifier(candidate):
                continue
            if candidate not in alternates:
                alternates.append(candidate)
        return alternates
