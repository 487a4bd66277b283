import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Collection, List, Optional, Union

from agents.subscription_agent.classifier import PageStateClassifier
from agents.subscription_agent.dates import DateCandidateResolver
from agents.subscription_agent.errors import TransientDriverError
from agents.subscription_agent.locales import LocaleTable, get_locale
from agents.subscription_agent.models import (
    CandidateDate,
    ConfirmationSurface,
    Control,
    SubscriptionState,
)
from agents.subscription_agent.text_match import contains_phrase, label_equals


@dataclass
class ConfirmationOutcome:
    confirmed: bool
    dates: List[CandidateDate] = field(default_factory=list)
    surface_found: bool = False
    skipped: bool = False
    clicked_label: str = ""
    state: Optional[SubscriptionState] = None


def choose_confirmation_control(
    surface: ConfirmationSurface,
    locale: LocaleTable,
    action: str,
) -> Optional[Control]:
    """Pick the one control to press inside a confirmation surface.

    An exact affirmative label wins. Failing that, with exactly two controls
    where one is a known negative, the other one is chosen. Otherwise None.
    """
    visible = [control for control in surface.controls if control.is_visible and control.text.strip()]
    for label in locale.confirm_labels(action):
        for control in visible:
            if label_equals(control.text, label):
                return control

    if len(visible) == 2:
        negatives = [c for c in visible if any(label_equals(c.text, label) for label in locale.cancel)]
        if len(negatives) == 1:
            return visible[1] if visible[0] is negatives[0] else visible[0]
    return None


class ConfirmationHandler:
    def __init__(
        self,
        classifier: Optional[PageStateClassifier] = None,
        date_resolver: Optional[DateCandidateResolver] = None,
        logger=None,
        *,
        clock: Callable[[], float] = time.monotonic,
        poll_interval_ms: int = 500,
        max_lookup_errors: int = 3,
    ) -> None:
        self.date_resolver = date_resolver or DateCandidateResolver()
        self.classifier = classifier or PageStateClassifier(self.date_resolver)
        self.logger = logger or logging.getLogger("subscription_runner.confirmation")
        self.clock = clock
        self.poll_interval_ms = poll_interval_ms
        self.max_lookup_errors = max_lookup_errors

    def _surface_phrases(self, table: LocaleTable):
        return table.confirmation_phrases + table.pause_confirm + table.resume_confirm + table.cancel_pause

    def find_surface(self, driver, table: LocaleTable) -> Optional[ConfirmationSurface]:
        phrases = self._surface_phrases(table)
        for surface in driver.confirmation_surfaces():
            if contains_phrase(surface.text, phrases):
                return surface
        return None

    def _poll_surface(self, driver, table: LocaleTable, deadline: float) -> Optional[ConfirmationSurface]:
        """Poll until a surface shows up or the deadline passes.

        A failed lookup (detached frame, navigation in flight) is retried
        even past the deadline, up to ``max_lookup_errors`` times. Nothing has
        been clicked yet, so retrying is safe.
        """
        errors = 0
        while True:
            try:
                surface = self.find_surface(driver, table)
            except TransientDriverError as exc:
                errors += 1
                if errors > self.max_lookup_errors:
                    raise
                self.logger.warning(
                    "Confirmation surface lookup failed (%s/%s): %s",
                    errors,
                    self.max_lookup_errors,
                    exc,
                )
            else:
                if surface is not None or self.clock() >= deadline:
                    return surface
            driver.wait(self.poll_interval_ms)

    def confirm(
        self,
        driver,
        locale: Union[LocaleTable, str],
        timeout_ms: int,
        action: str = "pause",
        expected_states: Collection[SubscriptionState] = (),
    ) -> ConfirmationOutcome:
        table = locale if isinstance(locale, LocaleTable) else get_locale(locale)
        deadline = self.clock() + max(0, timeout_ms) / 1000.0

        surface = self._poll_surface(driver, table, deadline)

        if surface is None:
            # Some pages apply the change without asking.
            classification = self.classifier.analyze(
                driver.page_text(), driver.controls(), table, context_verb=action
            )
            dates = list(classification.dates)
            if classification.state in expected_states:
                self.logger.info(
                    "No confirmation surface, but page already shows %s",
                    classification.state.value,
                )
                return ConfirmationOutcome(True, dates, skipped=True, state=classification.state)
            self.logger.warning(
                "No confirmation surface within %sms (page state %s)",
                timeout_ms,
                classification.state.value,
            )
            return ConfirmationOutcome(False, dates, state=classification.state)

        dates = self.date_resolver.resolve(surface.text, table, action)
        control = choose_confirmation_control(surface, table, action)
        if control is None:
            self.logger.warning(
                "Confirmation surface found but no unambiguous control among %s",
                [c.text for c in surface.controls],
            )
            return ConfirmationOutcome(False, dates, surface_found=True)

        driver.click(control)
        self.logger.info("Confirmation control pressed: %s", control.text)
        return ConfirmationOutcome(True, dates, surface_found=True, clicked_label=control.text)
