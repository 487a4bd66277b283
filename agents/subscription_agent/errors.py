from typing import Any, Dict, List, Optional

from agents.subscription_agent.models import ConnectionAttempt, RunStatus


class WorkflowError(Exception):
    """Base class for every error the workflow engine raises.

    ``code`` is the stable reason code written to the result record,
    ``outcome`` the result outcome, and ``retryable`` tells the supervisor
    whether a state may retry the operation locally.
    """

    code = "workflow_error"
    outcome = "error"
    retryable = False

    def __init__(self, message: str = "", detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.detail: Dict[str, Any] = dict(detail or {})


class TransientDriverError(WorkflowError):
    code = "driver_error"
    outcome = "error"
    retryable = True


class IdentifierUnknown(WorkflowError):
    code = "identifier_unknown"
    outcome = "connection_failed"


class ConnectionFailed(WorkflowError):
    code = "connection_failed"
    outcome = "connection_failed"
    retryable = True

    def __init__(self, message: str = "", attempts: Optional[List[ConnectionAttempt]] = None) -> None:
        super().__init__(message)
        self.attempts: List[ConnectionAttempt] = list(attempts or [])


class ConnectionExhausted(WorkflowError):
    code = "connection_exhausted"
    outcome = "connection_failed"

    def __init__(self, message: str = "", attempts: Optional[List[ConnectionAttempt]] = None) -> None:
        super().__init__(
            message or "No browser profile could be opened",
            detail={"attempts": [a.to_dict() for a in attempts or []]},
        )
        self.attempts: List[ConnectionAttempt] = list(attempts or [])


class LoginFailed(WorkflowError):
    code = "login_failed"
    outcome = "login_failed"


class RecaptchaDetected(LoginFailed):
    code = "recaptcha_detected"
    outcome = "recaptcha"


class ImageCaptchaDetected(LoginFailed):
    code = "image_captcha_detected"
    outcome = "image_captcha"
    retryable = True


class AccountLocked(LoginFailed):
    code = "account_locked"
    outcome = "account_locked"


class AccountDisabled(AccountLocked):
    code = "account_disabled"
    outcome = "account_disabled"


class SubscriptionExpired(WorkflowError):
    code = "subscription_expired"
    outcome = "expired"


class ClassificationUncertain(WorkflowError):
    code = "classification_uncertain"
    outcome = "needs_manual_review"


class ControlNotFound(WorkflowError):
    code = "control_not_found"
    outcome = "action_unavailable"
    retryable = True


class PauseAlreadyScheduled(WorkflowError):
    code = "pause_scheduled"
    outcome = "pause_scheduled"


class ConfirmationTimeout(WorkflowError):
    code = "confirmation_timeout"
    outcome = "confirmation_failed"


class VerificationMismatch(WorkflowError):
    code = "verification_mismatch"
    outcome = "verification_failed"

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Expected state {expected} after the action, found {actual}",
            detail={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class WorkflowTimedOut(WorkflowError):
    code = "workflow_timed_out"
    outcome = "timed_out"


class StagnationSkipped(WorkflowError):
    code = "stagnation_skipped"
    outcome = "skipped"


# One entry per error class; lookups walk the MRO so subclasses added later
# still resolve to their nearest parent.
ERROR_OUTCOMES = {
    WorkflowTimedOut: RunStatus.TIMED_OUT,
    StagnationSkipped: RunStatus.SKIPPED,
    RecaptchaDetected: RunStatus.SKIPPED,
    AccountDisabled: RunStatus.FAILED,
    AccountLocked: RunStatus.FAILED,
    ImageCaptchaDetected: RunStatus.FAILED,
    LoginFailed: RunStatus.FAILED,
    ConnectionExhausted: RunStatus.FAILED,
    ConnectionFailed: RunStatus.FAILED,
    IdentifierUnknown: RunStatus.FAILED,
    SubscriptionExpired: RunStatus.FAILED,
    ClassificationUncertain: RunStatus.FAILED,
    ControlNotFound: RunStatus.FAILED,
    PauseAlreadyScheduled: RunStatus.FAILED,
    ConfirmationTimeout: RunStatus.FAILED,
    VerificationMismatch: RunStatus.FAILED,
    TransientDriverError: RunStatus.FAILED,
    WorkflowError: RunStatus.FAILED,
}


def status_for(error: BaseException) -> RunStatus:
    for klass in type(error).__mro__:
        if klass in ERROR_OUTCOMES:
            return ERROR_OUTCOMES[klass]
    return RunStatus.FAILED


def outcome_for(error: BaseException) -> str:
    if isinstance(error, WorkflowError):
        return error.outcome
    return "error"


def reason_code_for(error: BaseException) -> str:
    if isinstance(error, WorkflowError):
        return error.code
    return "unexpected_error"
