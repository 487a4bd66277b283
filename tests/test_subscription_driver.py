import logging
import unittest
from unittest import mock

try:
    from playwright.sync_api import Error as PlaywrightError

    from agents.subscription_agent.driver import DialogPolicy, PlaywrightDriver
    from agents.subscription_agent.errors import TransientDriverError
    from agents.subscription_agent.models import Control

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


@unittest.skipUnless(DEPS_AVAILABLE, "playwright is not installed in this environment")
class PlaywrightDriverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.page = mock.Mock()
        self.driver = PlaywrightDriver(self.page, logging.getLogger("tests.driver"), humanize=False)

    def test_playwright_errors_become_transient(self) -> None:
        self.page.goto.side_effect = PlaywrightError("Frame was detached")
        with self.assertRaises(TransientDriverError):
            self.driver.navigate("https://www.youtube.com/paid_memberships")

    def test_controls_are_built_from_page_rows(self) -> None:
        self.page.evaluate.return_value = [
            {"text": "Pause membership", "visible": True, "ref": "sa-1"},
            {"text": "Resume", "visible": False, "ref": "sa-2"},
        ]
        controls = self.driver.controls()
        self.assertEqual(controls[0], Control("Pause membership", True, "sa-1"))
        self.assertFalse(controls[1].is_visible)

    def test_language_falls_back_to_english(self) -> None:
        self.page.evaluate.side_effect = PlaywrightError("Execution context was destroyed")
        self.assertEqual(self.driver.language(), "en")

    def test_click_falls_back_to_dom_click(self) -> None:
        self.page.locator.return_value.first.click.side_effect = PlaywrightError("intercepted")
        self.page.evaluate.return_value = True
        self.driver.click(Control("Resume", True, "sa-3"))

        self.page.locator.assert_called_once_with("[data-sa-ref='sa-3']")
        self.assertEqual(self.page.evaluate.call_args.args[1], "[data-sa-ref='sa-3']")

    def test_click_without_ref_is_refused(self) -> None:
        with self.assertRaises(TransientDriverError):
            self.driver.click(Control("Resume", True, ""))

    def test_dialog_handler_registered_once(self) -> None:
        self.driver.on_dialog(DialogPolicy())
        self.driver.on_dialog(DialogPolicy())
        self.assertEqual(self.page.on.call_count, 1)

        handler = self.page.on.call_args.args[1]
        confirm = mock.Mock(type="confirm")
        alert = mock.Mock(type="alert")
        prompt = mock.Mock(type="prompt")
        handler(confirm)
        handler(alert)
        handler(prompt)

        confirm.accept.assert_called_once_with()
        alert.dismiss.assert_called_once_with()
        prompt.accept.assert_called_once_with("")

    def test_dialog_policy_defaults(self) -> None:
        policy = DialogPolicy()
        self.assertTrue(policy.should_accept("beforeunload"))
        self.assertFalse(policy.should_accept("alert"))
        self.assertTrue(policy.should_accept("unknown"))


if __name__ == "__main__":
    unittest.main()
