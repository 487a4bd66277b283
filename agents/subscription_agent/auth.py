import logging
from dataclasses import dataclass
from typing import Optional

import pyotp

from agents.subscription_agent.models import AccountRecord
from agents.subscription_agent.text_match import contains_phrase

REASON_RECAPTCHA = "recaptcha"
REASON_IMAGE_CAPTCHA = "image_captcha"
REASON_ACCOUNT_LOCKED = "account_locked"
REASON_ACCOUNT_DISABLED = "account_disabled"
REASON_SESSION_REQUIRED = "session_required"
REASON_MISSING_CREDENTIALS = "missing_credentials"
REASON_STILL_ON_SIGN_IN = "still_on_sign_in"

_SIGN_IN_MARKERS = ("accounts.google.com", "/signin", "servicelogin", "/login")
_RECAPTCHA_URL_MARKERS = ("challenge/recaptcha", "challengeselection")
_RECAPTCHA_TEXT = ("i'm not a robot", "recaptcha", "로봇이 아닙니다", "비정상적인 활동")
_DISABLED_TEXT = (
    "Your account has been disabled",
    "This account has been disabled",
    "Account disabled",
)
_LOCKED_TEXT = (
    "Couldn't sign you in",
    "This account has been locked",
    "Account locked",
    "Too many failed attempts",
)

EMAIL_INPUT = "input[type='email'], input[name='identifier']"
PASSWORD_INPUT = "input[type='password'][name='Passwd'], input[type='password']"
TOTP_INPUT = "input[name='totpPin'], input#totpPin, input[type='tel'][autocomplete='one-time-code']"
IMAGE_CAPTCHA = "img#captchaimg, input[name='ca']"
RECAPTCHA_FRAME = "iframe[src*='recaptcha'], .g-recaptcha"


def is_sign_in_url(url: str) -> bool:
    lowered = str(url or "").lower()
    return any(marker in lowered for marker in _SIGN_IN_MARKERS)


@dataclass(frozen=True)
class LoginResult:
    success: bool
    reason: Optional[str] = None


class AuthProvider:
    """Capability used when the management page redirects to sign-in."""

    name = "base"

    def login(self, driver, account: AccountRecord) -> LoginResult:
        raise NotImplementedError


class SessionAuthProvider(AuthProvider):
    """Relies on the browser profile's stored session; never types secrets."""

    name = "session"

    def __init__(self, logger=None) -> None:
        self.logger = logger or logging.getLogger("subscription_runner.auth")

    def login(self, driver, account: AccountRecord) -> LoginResult:
        if not is_sign_in_url(driver.current_url()):
            return LoginResult(True)
        self.logger.warning("Profile session expired for account=%s", account.account_id)
        return LoginResult(False, REASON_SESSION_REQUIRED)


class CredentialsAuthProvider(AuthProvider):
    """Google sign-in with email, password and optional TOTP."""

    name = "credentials"

    def __init__(self, logger=None, *, step_timeout_ms: int = 15_000, settle_ms: int = 2_500) -> None:
        self.logger = logger or logging.getLogger("subscription_runner.auth")
        self.step_timeout_ms = step_timeout_ms
        self.settle_ms = settle_ms

    def _blocker(self, driver) -> Optional[str]:
        url = driver.current_url().lower()
        if any(marker in url for marker in _RECAPTCHA_URL_MARKERS):
            return REASON_RECAPTCHA
        if "/signin/disabled" in url:
            return REASON_ACCOUNT_DISABLED
        if driver.is_present(RECAPTCHA_FRAME):
            return REASON_RECAPTCHA
        if driver.is_present(IMAGE_CAPTCHA):
            return REASON_IMAGE_CAPTCHA
        text = driver.page_text()
        if contains_phrase(text, _DISABLED_TEXT):
            return REASON_ACCOUNT_DISABLED
        if contains_phrase(text, _LOCKED_TEXT):
            return REASON_ACCOUNT_LOCKED
        if contains_phrase(text, _RECAPTCHA_TEXT):
            return REASON_RECAPTCHA
        return None

    def login(self, driver, account: AccountRecord) -> LoginResult:
        if not account.email or not account.password:
            return LoginResult(False, REASON_MISSING_CREDENTIALS)

        if driver.is_present(EMAIL_INPUT, timeout_ms=self.step_timeout_ms):
            driver.fill(EMAIL_INPUT, account.email)
            driver.press("Enter")
            driver.wait(self.settle_ms)
            self.logger.info("Sign-in identifier submitted for account=%s", account.account_id)

        blocker = self._blocker(driver)
        if blocker:
            return LoginResult(False, blocker)

        if not driver.is_present(PASSWORD_INPUT, timeout_ms=self.step_timeout_ms):
            return LoginResult(False, self._blocker(driver) or REASON_STILL_ON_SIGN_IN)
        driver.fill(PASSWORD_INPUT, account.password)
        driver.press("Enter")
        driver.wait(self.settle_ms)

        blocker = self._blocker(driver)
        if blocker:
            return LoginResult(False, blocker)

        if account.totp_secret and driver.is_present(TOTP_INPUT, timeout_ms=self.step_timeout_ms // 3):
            driver.fill(TOTP_INPUT, pyotp.TOTP(account.totp_secret.replace(" ", "")).now())
            driver.press("Enter")
            driver.wait(self.settle_ms)
            self.logger.info("TOTP code submitted for account=%s", account.account_id)

        if is_sign_in_url(driver.current_url()):
            return LoginResult(False, self._blocker(driver) or REASON_STILL_ON_SIGN_IN)
        return LoginResult(True)


def build_auth_provider(mode: str, logger=None) -> AuthProvider:
    normalized = str(mode or "session").strip().lower()
    if normalized == "session":
        return SessionAuthProvider(logger)
    if normalized == "credentials":
        return CredentialsAuthProvider(logger)
    raise ValueError(f"Unknown auth_mode: {mode}")
