import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from agents.subscription_agent.auth import (
    REASON_ACCOUNT_DISABLED,
    REASON_ACCOUNT_LOCKED,
    REASON_IMAGE_CAPTCHA,
    REASON_RECAPTCHA,
    AuthProvider,
    is_sign_in_url,
)
from agents.subscription_agent.classifier import Classification, PageStateClassifier
from agents.subscription_agent.confirmation import ConfirmationHandler
from agents.subscription_agent.connection import BrowserSession, ConnectionResolver, SheetLookup
from agents.subscription_agent.dates import DateCandidateResolver
from agents.subscription_agent.driver import DialogPolicy, GuardedDriver, raise_if_interrupted
from agents.subscription_agent.errors import (
    AccountDisabled,
    AccountLocked,
    ClassificationUncertain,
    ConfirmationTimeout,
    ConnectionExhausted,
    ConnectionFailed,
    ControlNotFound,
    ImageCaptchaDetected,
    LoginFailed,
    PauseAlreadyScheduled,
    RecaptchaDetected,
    SubscriptionExpired,
    TransientDriverError,
    VerificationMismatch,
    WorkflowError,
    outcome_for,
    reason_code_for,
    status_for,
)
from agents.subscription_agent.locales import LocaleTable, get_locale
from agents.subscription_agent.models import (
    ROLE_PAUSE,
    ROLE_RESUME,
    AccountRecord,
    CandidateDate,
    ConnectionAttempt,
    Control,
    RunOptions,
    RunResult,
    RunStatus,
    SubscriptionState,
    WorkflowAction,
    WorkflowRun,
    WorkflowStep,
)
from agents.subscription_agent.text_match import matching_label
from agents.subscription_agent.watchdog import RunWatchdog

LOGIN_ERRORS = {
    REASON_RECAPTCHA: RecaptchaDetected,
    REASON_IMAGE_CAPTCHA: ImageCaptchaDetected,
    REASON_ACCOUNT_LOCKED: AccountLocked,
    REASON_ACCOUNT_DISABLED: AccountDisabled,
}

EXPECTED_AFTER = {
    WorkflowAction.PAUSE: (SubscriptionState.PAUSED, SubscriptionState.PAUSE_SCHEDULED),
    WorkflowAction.RESUME: (SubscriptionState.ACTIVE,),
}

SUCCESS_OUTCOMES = {
    WorkflowAction.PAUSE: "paused",
    WorkflowAction.RESUME: "resumed",
}


@dataclass(frozen=True)
class SupervisorSettings:
    management_url: str = "https://www.youtube.com/paid_memberships"
    workflow_timeout_ms: int = 300_000
    stagnation_refresh_s: float = 60.0
    stagnation_skip_s: float = 120.0
    watchdog_poll_s: float = 10.0
    max_refreshes: int = 2
    confirmation_timeout_ms: int = 12_000
    step_retries: int = 3
    navigation_timeout_ms: int = 60_000
    ip_echo_url: str = "https://api.ipify.org"
    image_captcha_retries: int = 2
    settle_ms: int = 1_500


@dataclass
class _RunContext:
    run: WorkflowRun
    account: AccountRecord
    options: RunOptions
    timeout_ms: int = 0
    locale: LocaleTable = field(default_factory=lambda: get_locale("en"))
    session: Optional[BrowserSession] = None
    driver: Optional[GuardedDriver] = None
    language: Optional[str] = None
    browser_ip: Optional[str] = None
    used_profile_id: Optional[str] = None
    attempts: List[ConnectionAttempt] = field(default_factory=list)
    classification: Optional[Classification] = None
    controls: List[Control] = field(default_factory=list)
    expanded: bool = False
    cancelling_schedule: bool = False
    initial_dates: List[CandidateDate] = field(default_factory=list)
    confirmation_dates: List[CandidateDate] = field(default_factory=list)
    verification_dates: List[CandidateDate] = field(default_factory=list)


class WorkflowSupervisor:
    """Drives one account through the pause/resume state machine.

    Starting -> Connecting -> Navigating -> DetectingLanguage ->
    CheckingStatus -> Acting -> Confirming -> Verifying -> Done.

    Each state marks progress on entry. A RunWatchdog runs alongside and may
    end the run as timed out or skipped at any point; the GuardedDriver then
    refuses further page interaction and the session is released once in
    the ``finally`` block. Every outcome, including errors, comes back as a
    RunResult.
    """

    def __init__(
        self,
        resolver: ConnectionResolver,
        auth_provider: AuthProvider,
        settings: SupervisorSettings,
        logger: Optional[logging.Logger] = None,
        *,
        classifier: Optional[PageStateClassifier] = None,
        confirmation: Optional[ConfirmationHandler] = None,
        date_resolver: Optional[DateCandidateResolver] = None,
        clock: Callable[[], float] = time.monotonic,
        watchdog_factory: Optional[Callable[..., RunWatchdog]] = None,
        snapshot: Optional[Callable[[Any, str], None]] = None,
        on_step: Optional[Callable[[WorkflowRun, str, str], None]] = None,
        dialog_policy: Optional[DialogPolicy] = None,
    ) -> None:
        self.resolver = resolver
        self.auth_provider = auth_provider
        self.settings = settings
        self.logger = logger or logging.getLogger("subscription_runner.supervisor")
        self.date_resolver = date_resolver or DateCandidateResolver()
        self.classifier = classifier or PageStateClassifier(self.date_resolver, self.logger)
        self.confirmation = confirmation or ConfirmationHandler(self.classifier, self.date_resolver, self.logger)
        self.clock = clock
        self.watchdog_factory = watchdog_factory or self._default_watchdog
        self.snapshot = snapshot
        self.on_step = on_step
        self.dialog_policy = dialog_policy or DialogPolicy()

    def _default_watchdog(self, run: WorkflowRun, timeout_s: float, on_abort) -> RunWatchdog:
        return RunWatchdog(
            run,
            timeout_s=timeout_s,
            refresh_after_s=self.settings.stagnation_refresh_s,
            skip_after_s=self.settings.stagnation_skip_s,
            poll_s=self.settings.watchdog_poll_s,
            max_refreshes=self.settings.max_refreshes,
            on_abort=on_abort,
            logger=self.logger,
        )

    # ---------- run ----------

    def run(
        self,
        account: AccountRecord,
        options: Optional[RunOptions] = None,
        sheet_lookup: Optional[SheetLookup] = None,
    ) -> RunResult:
        options = options or RunOptions()
        run = WorkflowRun(account.account_id, options.action, clock=self.clock)
        timeout_ms = options.workflow_timeout_ms or self.settings.workflow_timeout_ms
        ctx = _RunContext(run=run, account=account, options=options, timeout_ms=timeout_ms)

        def _abort(status: RunStatus, reason: str) -> None:
            if ctx.session is not None:
                ctx.session.abort()

        watchdog = self.watchdog_factory(run, timeout_ms / 1000.0, _abort)
        watchdog.start()
        try:
            result = self._execute(ctx, sheet_lookup)
        except Exception as exc:
            result = self._failure(ctx, exc)
        finally:
            watchdog.stop()
            if ctx.session is not None:
                ctx.session.close()

        run.status = result.status
        log = self.logger.info if result.success else self.logger.warning
        log(
            "Run finished account=%s run_id=%s action=%s status=%s outcome=%s duration_ms=%s",
            account.account_id,
            options.run_id,
            options.action.value,
            result.status.value,
            result.outcome,
            result.duration_ms,
        )
        return result

    def _execute(self, ctx: _RunContext, sheet_lookup: Optional[SheetLookup]) -> RunResult:
        action = ctx.options.action
        self._enter(ctx, WorkflowStep.STARTING)

        self._enter(ctx, WorkflowStep.CONNECTING)
        self._connect(ctx, sheet_lookup)

        self._enter(ctx, WorkflowStep.NAVIGATING)
        self._navigate(ctx)

        self._enter(ctx, WorkflowStep.DETECTING_LANGUAGE)
        ctx.language = ctx.driver.language()
        ctx.locale = get_locale(ctx.language)
        self._debug(ctx, "Page language %s (locale %s)", ctx.language, ctx.locale.code)

        self._enter(ctx, WorkflowStep.CHECKING_STATUS)
        classification = self._check_status(ctx)
        ctx.initial_dates = list(classification.dates)

        done = self._short_circuit(ctx, classification)
        if done is not None:
            return done

        self._enter(ctx, WorkflowStep.ACTING)
        self._with_retries(ctx, "act", lambda: self._act(ctx))

        self._enter(ctx, WorkflowStep.CONFIRMING)
        confirmation = self.confirmation.confirm(
            ctx.driver,
            ctx.locale,
            self.settings.confirmation_timeout_ms,
            action=action.value,
            expected_states=EXPECTED_AFTER[action],
        )
        ctx.confirmation_dates = list(confirmation.dates)
        if not confirmation.confirmed:
            self._snap(ctx, "confirmation_failed")
            message = "No confirmation control to press" if confirmation.surface_found else "Confirmation surface not found"
            raise ConfirmationTimeout(
                message,
                detail={"surface_found": confirmation.surface_found},
            )

        self._enter(ctx, WorkflowStep.VERIFYING)
        final = self._verify(ctx)

        self._enter(ctx, WorkflowStep.DONE)
        outcome = "pause_schedule_cancelled" if ctx.cancelling_schedule else SUCCESS_OUTCOMES[action]
        return self._result(
            ctx,
            outcome,
            True,
            RunStatus.SUCCEEDED,
            state=final.state,
            provisional=final.provisional,
        )

    # ---------- states ----------

    def _enter(self, ctx: _RunContext, step: WorkflowStep) -> None:
        raise_if_interrupted(ctx.run)
        ctx.run.mark_progress(step.value)
        self._debug(ctx, "Step %s", step.value)
        if self.on_step is not None:
            try:
                self.on_step(ctx.run, step.value, f"{ctx.options.action.value}: {step.value}")
            except Exception:
                self.logger.exception("Step callback failed for account=%s", ctx.account.account_id)
        if ctx.options.debug_mode and ctx.session is not None:
            self._snap(ctx, step.value.lower())

    def _connect(self, ctx: _RunContext, sheet_lookup: Optional[SheetLookup]) -> None:
        def _open():
            try:
                return self.resolver.resolve(ctx.account.profile_id, ctx.account.email, sheet_lookup)
            except (ConnectionFailed, ConnectionExhausted) as exc:
                ctx.attempts.extend(exc.attempts)
                raise

        connection = self._with_retries(ctx, "connect", _open)
        ctx.attempts.extend(connection.attempts)
        ctx.session = connection.handle
        ctx.used_profile_id = connection.used_id
        # The watchdog may have fired while the profile was starting.
        raise_if_interrupted(ctx.run)
        ctx.driver = GuardedDriver(ctx.session.driver, ctx.run, self.logger)
        ctx.driver.on_dialog(self.dialog_policy)
        self.logger.info(
            "Connected account=%s run_id=%s profile=%s",
            ctx.account.account_id,
            ctx.options.run_id,
            connection.used_id,
        )

    def _navigate(self, ctx: _RunContext) -> None:
        url = self.settings.management_url

        def _open_page() -> None:
            ctx.driver.navigate(url, timeout_ms=self._page_timeout_ms(ctx))

        self._with_retries(ctx, "navigate", _open_page)

        if is_sign_in_url(ctx.driver.current_url()):
            self._login(ctx)
            self._with_retries(ctx, "navigate", _open_page)

        if self.settings.ip_echo_url:
            try:
                ctx.browser_ip = ctx.driver.browser_ip(self.settings.ip_echo_url)
            except TransientDriverError as exc:
                self.logger.warning("Browser IP lookup failed for account=%s: %s", ctx.account.account_id, exc)

    def _login(self, ctx: _RunContext) -> None:
        attempts = 1 + max(0, self.settings.image_captcha_retries)
        for attempt in range(1, attempts + 1):
            result = self.auth_provider.login(ctx.driver, ctx.account)
            if result.success:
                self.logger.info("Signed in account=%s via %s", ctx.account.account_id, self.auth_provider.name)
                return
            error_class = LOGIN_ERRORS.get(result.reason or "", LoginFailed)
            error = error_class(f"Sign-in failed: {result.reason or 'unknown'}", detail={"reason": result.reason})
            if not error.retryable or attempt >= attempts:
                self._snap(ctx, "login_failed")
                raise error
            self.logger.warning(
                "Sign-in blocked by %s for account=%s (attempt %s/%s); reloading",
                result.reason,
                ctx.account.account_id,
                attempt,
                attempts,
            )
            ctx.driver.reload(timeout_ms=self._page_timeout_ms(ctx))
            ctx.driver.wait(self.settings.settle_ms)

    def _read_state(self, ctx: _RunContext) -> Classification:
        driver = ctx.driver
        text = driver.page_text()
        controls = driver.controls()
        if not ctx.expanded and not self._has_action_control(ctx.locale, controls):
            manage = self._find_control(controls, ctx.locale.manage)
            if manage is not None:
                ctx.expanded = True
                self._debug(ctx, "Expanding membership section via %r", manage.text)
                driver.click(manage)
                driver.wait(self.settings.settle_ms)
                text = driver.page_text()
                controls = driver.controls()
        ctx.controls = controls
        classification = self.classifier.analyze(text, controls, ctx.locale, context_verb=ctx.options.action.value)
        ctx.classification = classification
        ctx.run.result_state = classification.state
        return classification

    def _check_status(self, ctx: _RunContext) -> Classification:
        classification = self._with_retries(ctx, "check_status", lambda: self._read_state(ctx))

        if classification.state == SubscriptionState.UNCERTAIN:
            self.logger.warning(
                "State uncertain for account=%s (rule=%s); reloading once",
                ctx.account.account_id,
                classification.rule,
            )
            self._with_retries(ctx, "reload", lambda: ctx.driver.reload(timeout_ms=self._page_timeout_ms(ctx)))
            ctx.expanded = False
            ctx.driver.wait(self.settings.settle_ms)
            classification = self._with_retries(ctx, "check_status", lambda: self._read_state(ctx))
            if classification.state == SubscriptionState.UNCERTAIN:
                self._snap(ctx, "uncertain")
                raise ClassificationUncertain(
                    "Membership state could not be determined",
                    detail={"rule": classification.rule},
                )
        elif classification.provisional:
            # Buttons may still be rendering; one more look before trusting it.
            ctx.driver.wait(self.settings.settle_ms)
            again = self._with_retries(ctx, "check_status", lambda: self._read_state(ctx))
            if again.state != SubscriptionState.UNCERTAIN:
                classification = again

        self.logger.info(
            "Account=%s state=%s rule=%s evidence=%r provisional=%s",
            ctx.account.account_id,
            classification.state.value,
            classification.rule,
            classification.evidence,
            classification.provisional,
        )
        return classification

    def _short_circuit(self, ctx: _RunContext, classification: Classification) -> Optional[RunResult]:
        action = ctx.options.action
        state = classification.state

        if state == SubscriptionState.EXPIRED:
            raise SubscriptionExpired(
                f"Membership is expired ({classification.evidence})",
                detail={"evidence": classification.evidence},
            )

        outcome = None
        if action == WorkflowAction.RESUME:
            if state == SubscriptionState.ACTIVE:
                outcome = "already_active"
            elif state == SubscriptionState.PAUSE_SCHEDULED:
                if self._find_control(ctx.controls, ctx.locale.cancel_pause) is None:
                    raise PauseAlreadyScheduled("A pause is scheduled and no control cancels it")
                self.logger.info("Pause is scheduled for account=%s; cancelling it", ctx.account.account_id)
                ctx.cancelling_schedule = True
        else:
            if state == SubscriptionState.PAUSED:
                outcome = "already_paused"
            elif state == SubscriptionState.PAUSE_SCHEDULED:
                outcome = "already_pause_scheduled"

        if outcome is None:
            return None
        self._enter(ctx, WorkflowStep.DONE)
        return self._result(
            ctx,
            outcome,
            True,
            RunStatus.SUCCEEDED,
            state=state,
            provisional=classification.provisional,
        )

    def _act(self, ctx: _RunContext) -> None:
        if ctx.cancelling_schedule:
            labels = ctx.locale.cancel_pause
        else:
            labels = ctx.locale.action_labels(ctx.options.action.value)
        control = self._find_control(ctx.controls, labels)
        if control is None:
            ctx.controls = ctx.driver.controls()
            control = self._find_control(ctx.controls, labels)
        if control is None:
            self._snap(ctx, "control_not_found")
            raise ControlNotFound(f"No visible {ctx.options.action.value} control")
        self.logger.info("Clicking %r for account=%s", control.text, ctx.account.account_id)
        ctx.driver.click(control)

    def _verify(self, ctx: _RunContext) -> Classification:
        expected = EXPECTED_AFTER[ctx.options.action]
        retries = max(1, self.settings.step_retries)
        classification = None
        for attempt in range(1, retries + 1):
            ctx.driver.wait(self.settings.settle_ms)
            ctx.expanded = False
            classification = self._with_retries(ctx, "verify", lambda: self._read_state(ctx))
            ctx.verification_dates = list(classification.dates)
            if classification.state in expected:
                return classification
            self._debug(
                ctx,
                "Verification attempt %s/%s saw %s",
                attempt,
                retries,
                classification.state.value,
            )
            if attempt < retries:
                self._with_retries(ctx, "reload", lambda: ctx.driver.reload(timeout_ms=self._page_timeout_ms(ctx)))

        self._snap(ctx, "verification_failed")
        raise VerificationMismatch(
            "|".join(state.value for state in expected),
            classification.state.value,
        )

    # ---------- helpers ----------

    def _with_retries(self, ctx: _RunContext, label: str, operation: Callable[[], Any]) -> Any:
        retries = max(1, self.settings.step_retries)
        for attempt in range(1, retries + 1):
            raise_if_interrupted(ctx.run)
            try:
                return operation()
            except WorkflowError as exc:
                raise_if_interrupted(ctx.run)
                if not exc.retryable or attempt >= retries:
                    raise
                self.logger.warning(
                    "%s failed for account=%s (attempt %s/%s): %s",
                    label,
                    ctx.account.account_id,
                    attempt,
                    retries,
                    exc,
                )
                if ctx.driver is not None:
                    ctx.driver.wait(self.settings.settle_ms)
        raise RuntimeError(f"{label}: retries exhausted")

    def _page_timeout_ms(self, ctx: _RunContext) -> int:
        """Navigation timeout clipped to what is left of the run.

        A local Chromium cannot be released from the watchdog thread, so a
        blocked page load only ends when its own timeout does.
        """
        remaining_ms = ctx.timeout_ms - int(ctx.run.elapsed() * 1000)
        return max(1, min(self.settings.navigation_timeout_ms, remaining_ms))

    @staticmethod
    def _find_control(controls: List[Control], labels) -> Optional[Control]:
        for control in controls:
            if control.is_visible and matching_label(control.text, labels):
                return control
        return None

    def _has_action_control(self, locale: LocaleTable, controls: List[Control]) -> bool:
        return (
            self._find_control(controls, locale.pause) is not None
            or self._find_control(controls, locale.resume) is not None
            or self._find_control(controls, locale.cancel_pause) is not None
        )

    def _debug(self, ctx: _RunContext, message: str, *args: Any) -> None:
        level = logging.INFO if ctx.options.debug_mode else logging.DEBUG
        self.logger.log(
            level,
            "[%s %s] " + message,
            ctx.account.account_id,
            ctx.options.run_id or "-",
            *args,
        )

    def _snap(self, ctx: _RunContext, tag: str) -> None:
        if self.snapshot is None or ctx.session is None or ctx.run.interrupted:
            return
        try:
            self.snapshot(ctx.session.driver, tag)
        except Exception:
            self.logger.exception("Snapshot %s failed for account=%s", tag, ctx.account.account_id)

    def _merged_dates(self, ctx: _RunContext) -> List[CandidateDate]:
        merged: List[CandidateDate] = []
        seen = set()
        for item in ctx.confirmation_dates + ctx.verification_dates + ctx.initial_dates:
            key = (item.iso(), item.role)
            if key in seen:
                continue
            seen.add(key)
            merged.append(item)
        return merged

    def _result(
        self,
        ctx: _RunContext,
        outcome: str,
        success: bool,
        status: RunStatus,
        *,
        state: Optional[SubscriptionState] = None,
        provisional: bool = False,
        error: Optional[str] = None,
        reason_code: Optional[str] = None,
    ) -> RunResult:
        dates = self._merged_dates(ctx)
        pause = DateCandidateResolver.pick(dates, ROLE_PAUSE)
        resume = DateCandidateResolver.pick(dates, ROLE_RESUME)
        if state is None and ctx.classification is not None:
            state = ctx.classification.state
        return RunResult(
            account_id=ctx.account.account_id,
            action=ctx.options.action.value,
            outcome=outcome,
            success=success,
            state=state,
            status=status,
            pause_date=pause.iso() if pause else None,
            resume_date=resume.iso() if resume else None,
            browser_ip=ctx.browser_ip,
            duration_ms=int(max(0.0, ctx.run.elapsed()) * 1000),
            error=error,
            reason_code=reason_code,
            provisional=provisional,
            used_profile_id=ctx.used_profile_id,
            language=ctx.language,
            connection_attempts=list(ctx.attempts),
            steps=list(ctx.run.steps),
            dates=dates,
        )

    def _failure(self, ctx: _RunContext, exc: Exception) -> RunResult:
        error: BaseException = exc
        if ctx.run.interrupted:
            # Whatever the abandoned call raised, the interruption is the cause.
            try:
                raise_if_interrupted(ctx.run)
            except WorkflowError as interruption:
                error = interruption

        if isinstance(error, WorkflowError):
            self.logger.warning(
                "Run failed account=%s run_id=%s step=%s code=%s: %s",
                ctx.account.account_id,
                ctx.options.run_id,
                ctx.run.current_step,
                error.code,
                error,
            )
        else:
            self.logger.exception(
                "Unexpected error account=%s run_id=%s step=%s",
                ctx.account.account_id,
                ctx.options.run_id,
                ctx.run.current_step,
            )
            self._snap(ctx, "error")

        return self._result(
            ctx,
            outcome_for(error),
            False,
            status_for(error),
            provisional=bool(ctx.classification and ctx.classification.provisional),
            error=str(error),
            reason_code=reason_code_for(error),
        )
