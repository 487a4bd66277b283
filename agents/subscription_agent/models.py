import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class SubscriptionState(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    PAUSE_SCHEDULED = "PauseScheduled"
    EXPIRED = "Expired"
    UNCERTAIN = "Uncertain"


class WorkflowAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class WorkflowStep(str, Enum):
    STARTING = "Starting"
    CONNECTING = "Connecting"
    NAVIGATING = "Navigating"
    DETECTING_LANGUAGE = "DetectingLanguage"
    CHECKING_STATUS = "CheckingStatus"
    ACTING = "Acting"
    CONFIRMING = "Confirming"
    VERIFYING = "Verifying"
    DONE = "Done"


ROLE_PAUSE = "pause"
ROLE_RESUME = "resume"
ROLE_UNKNOWN = "unknown"

# How a CandidateDate got its role.
ROLE_SOURCE_PHRASE = "phrase"
ROLE_SOURCE_CONTEXT = "context"
ROLE_SOURCE_PROXIMITY = "proximity"


@dataclass(frozen=True)
class Control:
    """An actionable control (button/link) as resolved by the driver."""

    text: str
    is_visible: bool
    ref: str = ""


@dataclass(frozen=True)
class ConfirmationSurface:
    text: str
    controls: Tuple[Control, ...] = ()


@dataclass(frozen=True)
class CandidateDate:
    raw: str
    year: int
    month: int
    day: int
    role: str
    locale: str
    role_source: str = ROLE_SOURCE_PHRASE
    position: int = 0

    def as_date(self) -> date:
        return date(self.year, self.month, self.day)

    def iso(self) -> str:
        return self.as_date().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw": self.raw,
            "year": self.year,
            "month": self.month,
            "day": self.day,
            "role": self.role,
            "role_source": self.role_source,
            "locale": self.locale,
            "date": self.iso(),
        }


@dataclass(frozen=True)
class ConnectionAttempt:
    identifier: str
    outcome: str
    timestamp: float
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "outcome": self.outcome,
            "timestamp": datetime.fromtimestamp(self.timestamp).isoformat(),
            "error": self.error,
        }


@dataclass
class ConnectionResult:
    handle: Any
    used_id: str
    attempts: List[ConnectionAttempt] = field(default_factory=list)


@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    email: str = ""
    password: str = ""
    totp_secret: str = ""
    profile_id: str = ""


@dataclass(frozen=True)
class RunOptions:
    action: WorkflowAction = WorkflowAction.RESUME
    workflow_timeout_ms: int = 300_000
    debug_mode: bool = False
    run_id: str = ""


class WorkflowRun:
    """Mutable record of one account run.

    The progress marker is a single (step, timestamp) tuple replaced as a
    whole, so the watchdog thread always reads a consistent pair.
    Terminal interruption (timeout/stagnation) is set at most once.
    """

    def __init__(
        self,
        account_id: str,
        action: WorkflowAction,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.account_id = account_id
        self.action = action
        self.started_at = datetime.now()
        self.clock = clock
        self.started_clock = clock()
        self._progress: Tuple[str, float] = (WorkflowStep.STARTING.value, self.started_clock)
        self.status = RunStatus.RUNNING
        self.result_state: Optional[SubscriptionState] = None
        self.refresh_count = 0
        self.steps: List[str] = []
        self._refresh_requested = threading.Event()
        self._interrupt_lock = threading.Lock()
        self._interrupt: Optional[Tuple[RunStatus, str]] = None

    @property
    def current_step(self) -> str:
        return self._progress[0]

    @property
    def last_progress_at(self) -> float:
        return self._progress[1]

    def progress_snapshot(self) -> Tuple[str, float]:
        return self._progress

    def mark_progress(self, step: str) -> None:
        now = self.clock()
        previous = self._progress[1]
        self._progress = (step, now if now > previous else previous)
        self.steps.append(step)

    def elapsed(self) -> float:
        return self.clock() - self.started_clock

    def request_refresh(self) -> None:
        self._refresh_requested.set()

    def take_refresh_request(self) -> bool:
        if not self._refresh_requested.is_set():
            return False
        self._refresh_requested.clear()
        return True

    def interrupt(self, status: RunStatus, reason: str) -> bool:
        with self._interrupt_lock:
            if self._interrupt is not None:
                return False
            self._interrupt = (status, reason)
            return True

    @property
    def interrupted(self) -> bool:
        return self._interrupt is not None

    @property
    def interruption(self) -> Optional[Tuple[RunStatus, str]]:
        return self._interrupt


@dataclass
class RunResult:
    account_id: str
    action: str
    outcome: str
    success: bool
    state: Optional[SubscriptionState]
    status: RunStatus
    pause_date: Optional[str] = None
    resume_date: Optional[str] = None
    browser_ip: Optional[str] = None
    duration_ms: int = 0
    error: Optional[str] = None
    reason_code: Optional[str] = None
    provisional: bool = False
    used_profile_id: Optional[str] = None
    language: Optional[str] = None
    connection_attempts: List[ConnectionAttempt] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    dates: List[CandidateDate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "action": self.action,
            "outcome": self.outcome,
            "success": self.success,
            "state": self.state.value if self.state is not None else None,
            "status": self.status.value,
            "pause_date": self.pause_date,
            "resume_date": self.resume_date,
            "browser_ip": self.browser_ip,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "reason_code": self.reason_code,
            "provisional": self.provisional,
            "used_profile_id": self.used_profile_id,
            "language": self.language,
            "connection_attempts": [a.to_dict() for a in self.connection_attempts],
            "steps": list(self.steps),
            "dates": [d.to_dict() for d in self.dates],
        }
