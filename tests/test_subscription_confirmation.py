import unittest
from datetime import date
from typing import List

from agents.subscription_agent.classifier import PageStateClassifier
from agents.subscription_agent.confirmation import ConfirmationHandler, choose_confirmation_control
from agents.subscription_agent.dates import DateCandidateResolver
from agents.subscription_agent.errors import TransientDriverError
from agents.subscription_agent.locales import get_locale
from agents.subscription_agent.models import (
    ROLE_PAUSE,
    ROLE_RESUME,
    ConfirmationSurface,
    Control,
    SubscriptionState,
)


def _control(text: str, visible: bool = True) -> Control:
    return Control(text=text, is_visible=visible, ref=text)


def _surface(text: str, *labels: str) -> ConfirmationSurface:
    return ConfirmationSurface(text=text, controls=tuple(_control(label) for label in labels))


class StepClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SurfaceDriver:
    """Shows ``surfaces`` after ``appear_after`` waits; records clicks.

    The first ``lookup_failures`` surface lookups raise as a detached frame would.
    """

    def __init__(
        self,
        surfaces,
        clock: StepClock,
        appear_after: int = 0,
        text: str = "",
        controls=None,
        lookup_failures: int = 0,
    ) -> None:
        self.surfaces = list(surfaces)
        self.clock = clock
        self.appear_after = appear_after
        self.text = text
        self._controls = list(controls or [])
        self.waits = 0
        self.clicked: List[str] = []
        self.lookup_failures = lookup_failures

    def confirmation_surfaces(self):
        if self.lookup_failures > 0:
            self.lookup_failures -= 1
            raise TransientDriverError("Frame was detached")
        return self.surfaces if self.waits >= self.appear_after else []

    def wait(self, ms: int) -> None:
        self.waits += 1
        self.clock.now += ms / 1000.0

    def click(self, control: Control) -> None:
        self.clicked.append(control.text)

    def page_text(self) -> str:
        return self.text

    def controls(self, root=None):
        return list(self._controls)


class ChooseConfirmationControlTests(unittest.TestCase):
    def setUp(self) -> None:
        self.en = get_locale("en")

    def test_exact_affirmative_label(self) -> None:
        surface = _surface("Pause your membership?", "Cancel", "Pause membership")
        self.assertEqual(choose_confirmation_control(surface, self.en, "pause").text, "Pause membership")

    def test_generic_confirm_label(self) -> None:
        surface = _surface("Are you sure?", "Close", "Learn more", "Confirm")
        self.assertEqual(choose_confirmation_control(surface, self.en, "resume").text, "Confirm")

    def test_two_controls_one_negative_picks_the_other(self) -> None:
        surface = _surface("Are you sure?", "Not now", "Sounds good")
        self.assertEqual(choose_confirmation_control(surface, self.en, "pause").text, "Sounds good")

    def test_ambiguous_surface_returns_none(self) -> None:
        surface = _surface("Are you sure?", "Learn more", "Sounds good", "Cancel")
        self.assertIsNone(choose_confirmation_control(surface, self.en, "pause"))

    def test_hidden_controls_are_not_candidates(self) -> None:
        surface = ConfirmationSurface(
            text="Are you sure?",
            controls=(_control("Confirm", visible=False), _control("Cancel"), _control("Go ahead")),
        )
        self.assertEqual(choose_confirmation_control(surface, self.en, "pause").text, "Go ahead")

    def test_cancel_pause_label_confirms_a_resume(self) -> None:
        surface = _surface("Cancel pause?", "Learn more", "Go back", "Cancel pause")
        self.assertEqual(choose_confirmation_control(surface, self.en, "resume").text, "Cancel pause")
        self.assertIsNone(choose_confirmation_control(surface, self.en, "pause"))


class ConfirmationHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = StepClock()
        resolver = DateCandidateResolver(today=lambda: date(2026, 3, 1))
        self.handler = ConfirmationHandler(
            PageStateClassifier(resolver),
            resolver,
            clock=self.clock,
            poll_interval_ms=500,
        )

    def test_clicks_affirmative_and_extracts_dates(self) -> None:
        driver = SurfaceDriver(
            [_surface("Pause your membership?\nYour membership will pause on Oct 4, 2026.", "Cancel", "Pause membership")],
            self.clock,
            appear_after=2,
        )
        outcome = self.handler.confirm(driver, "en", 8_000, action="pause")

        self.assertTrue(outcome.confirmed)
        self.assertTrue(outcome.surface_found)
        self.assertEqual(driver.clicked, ["Pause membership"])
        self.assertEqual(driver.waits, 2)
        self.assertEqual(outcome.dates[0].role, ROLE_PAUSE)
        self.assertEqual(outcome.dates[0].iso(), "2026-10-04")

    def test_surfaces_without_confirmation_text_are_ignored(self) -> None:
        driver = SurfaceDriver([_surface("Cookies help us deliver our services", "Accept all")], self.clock)
        outcome = self.handler.confirm(driver, "en", 2_000, action="pause")

        self.assertFalse(outcome.confirmed)
        self.assertEqual(driver.clicked, [])
        self.assertEqual(driver.waits, 4)

    def test_no_surface_but_page_already_in_expected_state(self) -> None:
        driver = SurfaceDriver([], self.clock, controls=[_control("Pause membership")])
        outcome = self.handler.confirm(
            driver,
            "en",
            1_000,
            action="resume",
            expected_states=(SubscriptionState.ACTIVE,),
        )
        self.assertTrue(outcome.confirmed)
        self.assertTrue(outcome.skipped)
        self.assertEqual(outcome.state, SubscriptionState.ACTIVE)

    def test_ambiguous_surface_is_not_confirmed(self) -> None:
        driver = SurfaceDriver(
            [_surface("Resume membership?", "Learn more", "Sounds good", "Maybe")],
            self.clock,
        )
        outcome = self.handler.confirm(driver, "en", 1_000, action="resume")
        self.assertFalse(outcome.confirmed)
        self.assertTrue(outcome.surface_found)
        self.assertEqual(driver.clicked, [])

    def test_failed_lookups_are_retried_before_clicking(self) -> None:
        driver = SurfaceDriver(
            [_surface("Resume membership?", "Cancel", "Resume")],
            self.clock,
            lookup_failures=2,
        )
        outcome = self.handler.confirm(driver, "en", 0, action="resume")

        self.assertTrue(outcome.confirmed)
        self.assertEqual(driver.clicked, ["Resume"])
        self.assertEqual(driver.waits, 2)

    def test_failed_lookups_escape_after_the_limit(self) -> None:
        driver = SurfaceDriver(
            [_surface("Resume membership?", "Cancel", "Resume")],
            self.clock,
            lookup_failures=10,
        )
        with self.assertRaises(TransientDriverError):
            self.handler.confirm(driver, "en", 60_000, action="resume")
        self.assertEqual(driver.clicked, [])
        self.assertEqual(driver.waits, 3)

    def test_page_without_surface_reads_dates_for_the_action(self) -> None:
        driver = SurfaceDriver([], self.clock, text="Billed on Mar 1", controls=[_control("Pause membership")])
        outcome = self.handler.confirm(
            driver,
            "en",
            0,
            action="resume",
            expected_states=(SubscriptionState.ACTIVE,),
        )
        self.assertTrue(outcome.skipped)
        self.assertEqual(outcome.dates[0].role, ROLE_RESUME)
        self.assertEqual(outcome.dates[0].iso(), "2026-03-01")


if __name__ == "__main__":
    unittest.main()
