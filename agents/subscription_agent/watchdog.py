import logging
import threading
from typing import Callable, Optional

from agents.subscription_agent.models import RunStatus, WorkflowRun


class RunWatchdog:
    """Background guards for one run: a hard timeout and a stagnation poller.

    The poller compares the time since the run's last progress mark with two
    thresholds. Past ``refresh_after_s`` it asks for one page refresh per
    stall, at most ``max_refreshes`` per run; past ``skip_after_s`` it marks
    the run skipped. Either terminal outcome is set once and triggers
    ``on_abort`` so blocked driver calls are cut off.
    """

    def __init__(
        self,
        run: WorkflowRun,
        *,
        timeout_s: float = 300.0,
        refresh_after_s: float = 60.0,
        skip_after_s: float = 120.0,
        poll_s: float = 10.0,
        max_refreshes: int = 2,
        on_abort: Optional[Callable[[RunStatus, str], None]] = None,
        logger=None,
    ) -> None:
        self.run = run
        self.timeout_s = timeout_s
        self.refresh_after_s = refresh_after_s
        self.skip_after_s = skip_after_s
        self.poll_s = poll_s
        self.max_refreshes = max_refreshes
        self.on_abort = on_abort
        self.logger = logger or logging.getLogger("subscription_runner.watchdog")
        self._stop = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self._thread: Optional[threading.Thread] = None
        self._refreshed_for: Optional[float] = None

    def start(self) -> None:
        self._timer = threading.Timer(self.timeout_s, self._on_hard_timeout)
        self._timer.daemon = True
        self._timer.start()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"watchdog-{self.run.account_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._timer is not None:
            self._timer.cancel()

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_s):
            if self.check():
                return

    def _on_hard_timeout(self) -> None:
        if self._stop.is_set():
            return
        self._fire(RunStatus.TIMED_OUT, f"Workflow exceeded {int(self.timeout_s)}s")

    def check(self) -> bool:
        """Evaluate the thresholds once. Returns True when the run is over."""
        if self.run.interrupted:
            return True

        if self.run.elapsed() >= self.timeout_s:
            self._fire(RunStatus.TIMED_OUT, f"Workflow exceeded {int(self.timeout_s)}s")
            return True

        step, last_progress = self.run.progress_snapshot()
        idle = self.run.clock() - last_progress

        if idle >= self.skip_after_s:
            self._fire(RunStatus.SKIPPED, f"No progress for {int(idle)}s at step {step}")
            return True

        if (
            idle >= self.refresh_after_s
            and self._refreshed_for != last_progress
            and self.run.refresh_count < self.max_refreshes
        ):
            self._refreshed_for = last_progress
            self.run.refresh_count += 1
            self.run.request_refresh()
            self.logger.warning(
                "No progress for %ss at step %s; refresh %s/%s requested for account=%s",
                int(idle),
                step,
                self.run.refresh_count,
                self.max_refreshes,
                self.run.account_id,
            )
        return False

    def _fire(self, status: RunStatus, reason: str) -> None:
        if not self.run.interrupt(status, reason):
            return
        self.logger.error("Run for account=%s interrupted: %s (%s)", self.run.account_id, status.value, reason)
        if self.on_abort is None:
            return
        try:
            self.on_abort(status, reason)
        except Exception:
            self.logger.exception("Abort hook failed for account=%s", self.run.account_id)
