import random
import time
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, List, Optional

from playwright.sync_api import Error as PlaywrightError

from agents.subscription_agent.errors import (
    StagnationSkipped,
    TransientDriverError,
    WorkflowTimedOut,
)
from agents.subscription_agent.models import (
    ConfirmationSurface,
    Control,
    RunStatus,
    WorkflowRun,
)

REF_ATTRIBUTE = "data-sa-ref"

DIALOG_SELECTORS = (
    "[role='dialog']",
    "[role='alertdialog']",
    "[aria-modal='true']",
    "tp-yt-paper-dialog",
    "ytd-popup-container",
)

# Tags every actionable element with a stable ref and reports whether it is
# really rendered: attached, non-zero box, not hidden by style or opacity.
_CONTROLS_SCRIPT = """
({ refAttr, root }) => {
  const scope = root ? document.querySelector(root) : document;
  if (!scope) return [];
  const isVisible = (el) => {
    if (!el.isConnected) return false;
    if (typeof el.checkVisibility === 'function' &&
        !el.checkVisibility({ checkOpacity: true, checkVisibilityCSS: true })) {
      return false;
    }
    const rect = el.getBoundingClientRect();
    if (rect.width <= 0 || rect.height <= 0) return false;
    let node = el;
    while (node && node.nodeType === 1) {
      const style = window.getComputedStyle(node);
      if (style.display === 'none' || style.visibility === 'hidden' || parseFloat(style.opacity) === 0) {
        return false;
      }
      node = node.parentElement;
    }
    return true;
  };
  const selector = "button, a[href], [role='button'], [role='link'], tp-yt-paper-button, yt-button-shape button";
  const seen = new Set();
  const out = [];
  let counter = Number(window.__saRefCounter || 0);
  for (const el of scope.querySelectorAll(selector)) {
    if (seen.has(el)) continue;
    seen.add(el);
    const text = (el.innerText || el.getAttribute('aria-label') || el.textContent || '').trim();
    if (!text) continue;
    let ref = el.getAttribute(refAttr);
    if (!ref) {
      counter += 1;
      ref = 'sa-' + counter;
      el.setAttribute(refAttr, ref);
    }
    out.push({ ref, text, visible: isVisible(el) });
  }
  window.__saRefCounter = counter;
  return out;
}
"""

_SURFACES_SCRIPT = """
({ selectors }) => {
  const out = [];
  for (const sel of selectors) {
    for (const el of document.querySelectorAll(sel)) {
      const rect = el.getBoundingClientRect();
      const style = window.getComputedStyle(el);
      const visible = el.isConnected && rect.width > 0 && rect.height > 0 &&
        style.display !== 'none' && style.visibility !== 'hidden' && parseFloat(style.opacity) !== 0;
      if (!visible) continue;
      const text = (el.innerText || '').trim();
      if (!text) continue;
      let mark = el.getAttribute('data-sa-surface');
      if (!mark) {
        window.__saSurfaceCounter = Number(window.__saSurfaceCounter || 0) + 1;
        mark = String(window.__saSurfaceCounter);
        el.setAttribute('data-sa-surface', mark);
      }
      out.push({ root: "[data-sa-surface='" + mark + "']", text });
    }
  }
  return out;
}
"""

_LANGUAGE_SCRIPT = """
() => {
  const htmlLang = document.documentElement.lang;
  if (htmlLang) return htmlLang;
  const hl = new URLSearchParams(window.location.search).get('hl');
  if (hl) return hl;
  const tagged = document.querySelector('[lang]');
  if (tagged) return tagged.getAttribute('lang');
  return 'en';
}
"""

_IP_SCRIPT = """
async (url) => {
  try {
    const response = await fetch(url, { cache: 'no-store' });
    if (!response.ok) return null;
    return (await response.text()).trim();
  } catch (e) {
    return null;
  }
}
"""


@dataclass(frozen=True)
class DialogPolicy:
    """How native browser dialogs are answered for the whole session."""

    accept: FrozenSet[str] = frozenset({"beforeunload", "confirm", "prompt"})
    dismiss: FrozenSet[str] = frozenset({"alert"})
    prompt_text: str = ""

    def should_accept(self, dialog_type: str) -> bool:
        if dialog_type in self.accept:
            return True
        if dialog_type in self.dismiss:
            return False
        return True


class PlaywrightDriver:
    """Automation driver over a sync Playwright page.

    Playwright errors surface as TransientDriverError so states can retry
    them locally.
    """

    def __init__(self, page, logger, *, navigation_timeout_ms: int = 60_000, humanize: bool = True) -> None:
        self.page = page
        self.logger = logger
        self.navigation_timeout_ms = navigation_timeout_ms
        self.humanize = humanize
        self._dialog_handler: Optional[Callable[[Any], None]] = None

    def _call(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except PlaywrightError as err:
            raise TransientDriverError(f"{label} failed: {err}") from err

    def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout_ms: Optional[int] = None) -> None:
        timeout = timeout_ms or self.navigation_timeout_ms
        self._call("navigate", lambda: self.page.goto(url, wait_until=wait_until, timeout=timeout))

    def reload(self, timeout_ms: Optional[int] = None) -> None:
        timeout = timeout_ms or self.navigation_timeout_ms
        self._call("reload", lambda: self.page.reload(wait_until="domcontentloaded", timeout=timeout))

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return self._call("evaluate", lambda: self.page.evaluate(script))
        return self._call("evaluate", lambda: self.page.evaluate(script, arg))

    def current_url(self) -> str:
        return str(self.page.url or "")

    def screenshot(self, path: str) -> None:
        self._call("screenshot", lambda: self.page.screenshot(path=path, full_page=True))

    def content(self) -> str:
        return self._call("content", self.page.content)

    def on_dialog(self, policy: DialogPolicy) -> None:
        if self._dialog_handler is not None:
            return

        def _handle(dialog) -> None:
            dialog_type = str(getattr(dialog, "type", "") or "")
            try:
                if policy.should_accept(dialog_type):
                    if dialog_type == "prompt":
                        dialog.accept(policy.prompt_text)
                    else:
                        dialog.accept()
                    self.logger.info("Native dialog accepted: type=%s", dialog_type)
                else:
                    dialog.dismiss()
                    self.logger.info("Native dialog dismissed: type=%s", dialog_type)
            except PlaywrightError:
                self.logger.exception("Could not answer native dialog type=%s", dialog_type)

        self._dialog_handler = _handle
        self.page.on("dialog", _handle)

    def page_text(self) -> str:
        text = self.evaluate("() => document.body ? document.body.innerText : ''")
        return str(text or "")

    def controls(self, root: Optional[str] = None) -> List[Control]:
        rows = self.evaluate(_CONTROLS_SCRIPT, {"refAttr": REF_ATTRIBUTE, "root": root}) or []
        return [
            Control(text=str(row.get("text", "")), is_visible=bool(row.get("visible")), ref=str(row.get("ref", "")))
            for row in rows
        ]

    def confirmation_surfaces(self) -> List[ConfirmationSurface]:
        rows = self.evaluate(_SURFACES_SCRIPT, {"selectors": list(DIALOG_SELECTORS)}) or []
        surfaces: List[ConfirmationSurface] = []
        for row in rows:
            root = str(row.get("root", ""))
            surfaces.append(
                ConfirmationSurface(text=str(row.get("text", "")), controls=tuple(self.controls(root=root)))
            )
        return surfaces

    def language(self) -> str:
        try:
            value = self.evaluate(_LANGUAGE_SCRIPT)
        except TransientDriverError:
            self.logger.warning("Language detection failed; using en")
            return "en"
        return str(value or "en")

    def browser_ip(self, echo_url: str) -> Optional[str]:
        value = self.evaluate(_IP_SCRIPT, echo_url)
        value = str(value or "").strip()
        return value or None

    def click(self, control: Control, timeout_ms: int = 15_000) -> None:
        if not control.ref:
            raise TransientDriverError(f"Control has no ref: {control.text!r}")
        selector = f"[{REF_ATTRIBUTE}='{control.ref}']"
        locator = self.page.locator(selector).first
        try:
            if self.humanize:
                self._humanized_click(locator, timeout_ms)
            else:
                locator.click(timeout=timeout_ms)
            return
        except PlaywrightError as err:
            self.logger.warning("Click on %r failed; retrying via DOM click. error=%s", control.text, err)
        clicked = self.evaluate(
            "(sel) => { const el = document.querySelector(sel); if (!el) return false; el.click(); return true; }",
            selector,
        )
        if not clicked:
            raise TransientDriverError(f"Could not click control {control.text!r}")

    def _humanized_click(self, locator, timeout_ms: int) -> None:
        try:
            locator.scroll_into_view_if_needed(timeout=timeout_ms)
        except PlaywrightError:
            pass
        box = None
        try:
            box = locator.bounding_box()
        except PlaywrightError:
            pass
        if box:
            cx = float(box["x"]) + (float(box["width"]) / 2.0)
            cy = float(box["y"]) + (float(box["height"]) / 2.0)
            self.page.mouse.move(
                cx + random.uniform(-24.0, 24.0),
                cy + random.uniform(-12.0, 12.0),
                steps=random.randint(6, 14),
            )
        time.sleep(random.uniform(0.12, 0.42))
        locator.click(timeout=timeout_ms, delay=random.randint(70, 220))

    def fill(self, selector: str, value: str, timeout_ms: int = 15_000) -> None:
        self._call("fill", lambda: self.page.fill(selector, value, timeout=timeout_ms))

    def press(self, key: str) -> None:
        self._call("press", lambda: self.page.keyboard.press(key))

    def is_present(self, selector: str, timeout_ms: int = 0) -> bool:
        if timeout_ms > 0:
            try:
                self.page.wait_for_selector(selector, timeout=timeout_ms, state="visible")
            except PlaywrightError:
                return False
        group = self.page.locator(selector)
        try:
            count = group.count()
        except PlaywrightError:
            return False
        for idx in range(count):
            try:
                if group.nth(idx).is_visible():
                    return True
            except PlaywrightError:
                continue
        return False

    def wait(self, ms: int) -> None:
        self._call("wait", lambda: self.page.wait_for_timeout(ms))


def raise_if_interrupted(run: WorkflowRun) -> None:
    interruption = run.interruption
    if interruption is None:
        return
    status, reason = interruption
    if status == RunStatus.SKIPPED:
        raise StagnationSkipped(reason)
    raise WorkflowTimedOut(reason)


class GuardedDriver:
    """Wraps a driver so no interaction happens once the run is interrupted.

    Every call checks the run's interruption flag first, and again after the
    call returns so a straggling result is never acted upon. A refresh asked
    for by the watchdog is performed here, on the thread that owns the page.
    """

    def __init__(self, driver, run: WorkflowRun, logger=None) -> None:
        self._driver = driver
        self._run = run
        self._logger = logger

    @property
    def inner(self):
        return self._driver

    def ensure_active(self) -> None:
        raise_if_interrupted(self._run)

    def _apply_pending_refresh(self) -> None:
        if not self._run.take_refresh_request():
            return
        if self._logger is not None:
            self._logger.warning(
                "Stagnation refresh for account=%s at step=%s",
                self._run.account_id,
                self._run.current_step,
            )
        try:
            self._driver.reload()
        except TransientDriverError:
            if self._logger is not None:
                self._logger.warning("Stagnation refresh failed; continuing")
        self.ensure_active()

    def __getattr__(self, name: str):
        target = getattr(self._driver, name)
        if not callable(target):
            return target

        def _guarded(*args, **kwargs):
            self.ensure_active()
            self._apply_pending_refresh()
            try:
                value = target(*args, **kwargs)
            except Exception:
                self.ensure_active()
                raise
            self.ensure_active()
            return value

        return _guarded
