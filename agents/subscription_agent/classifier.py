import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

from agents.subscription_agent.dates import DateCandidateResolver
from agents.subscription_agent.locales import LocaleTable, get_locale
from agents.subscription_agent.models import (
    ROLE_PAUSE,
    ROLE_RESUME,
    CandidateDate,
    Control,
    SubscriptionState,
)
from agents.subscription_agent.text_match import contains_phrase, matching_label

_SYMBOL = r"(?:US\$|R\$|CA\$|A\$|[$€£¥₩₫₽₹₺])"
_CODE = r"(?:Rp|TL|zł|kr|USD|EUR|TRY|IDR|VND)"
_AMOUNT = r"\d(?:[\d.,]*\d)?"
_PRICE_RE = re.compile(
    rf"{_SYMBOL}\s?{_AMOUNT}|{_AMOUNT}\s?{_SYMBOL}"
    rf"|(?<![^\W\d_]){_CODE}\s?{_AMOUNT}|{_AMOUNT}\s?{_CODE}(?![^\W\d_])"
)


@dataclass(frozen=True)
class Classification:
    state: SubscriptionState
    rule: str
    evidence: str = ""
    provisional: bool = False
    dates: Tuple[CandidateDate, ...] = ()

    def date_for(self, role: str) -> Optional[CandidateDate]:
        return DateCandidateResolver.pick(list(self.dates), role)

    @property
    def pause_date(self) -> Optional[str]:
        found = self.date_for(ROLE_PAUSE)
        return found.iso() if found else None

    @property
    def resume_date(self) -> Optional[str]:
        found = self.date_for(ROLE_RESUME)
        return found.iso() if found else None


def _visible_match(controls: Iterable[Control], labels: Sequence[str]) -> Optional[Control]:
    for control in controls:
        if not control.is_visible:
            continue
        if matching_label(control.text, labels):
            return control
    return None


class PageStateClassifier:
    """Turns page text plus a control snapshot into a SubscriptionState.

    Rules are evaluated in a fixed order and the first match wins:

    1. visible resume control -> Paused
    2. expiry text (or a visible renew control) -> Expired
    3. scheduling text ("pauses on", "resumes on") -> PauseScheduled
    4. visible pause control -> Active
    5. price or plan text without error markers -> Active, provisional
    6. otherwise Uncertain

    No DOM access happens here; the driver resolves controls and their
    visibility beforehand.
    """

    def __init__(self, date_resolver: Optional[DateCandidateResolver] = None, logger=None) -> None:
        self.date_resolver = date_resolver or DateCandidateResolver()
        self.logger = logger or logging.getLogger("subscription_runner.classifier")

    def classify(
        self,
        page_text: str,
        controls: Sequence[Control],
        locale: Union[LocaleTable, str],
        context_verb: str = ROLE_PAUSE,
    ) -> SubscriptionState:
        return self.analyze(page_text, controls, locale, context_verb).state

    def analyze(
        self,
        page_text: str,
        controls: Sequence[Control],
        locale: Union[LocaleTable, str],
        context_verb: str = ROLE_PAUSE,
    ) -> Classification:
        """Classify the page; a date with no role phrase near it takes ``context_verb``."""
        try:
            table = locale if isinstance(locale, LocaleTable) else get_locale(locale)
            return self._analyze(str(page_text or ""), list(controls or []), table, context_verb)
        except Exception:
            self.logger.exception("Classification failed; reporting Uncertain")
            return Classification(SubscriptionState.UNCERTAIN, rule="error")

    def _analyze(
        self,
        text: str,
        controls: Sequence[Control],
        table: LocaleTable,
        context_verb: str,
    ) -> Classification:
        resume_control = _visible_match(controls, table.resume)
        if resume_control is not None:
            return Classification(
                SubscriptionState.PAUSED,
                rule="resume_control",
                evidence=resume_control.text,
                dates=self._dates(text, table, context_verb),
            )

        expired_phrase = contains_phrase(text, table.expired)
        renew_control = _visible_match(controls, table.renew)
        if expired_phrase or renew_control is not None:
            return Classification(
                SubscriptionState.EXPIRED,
                rule="expired_text" if expired_phrase else "renew_control",
                evidence=expired_phrase or renew_control.text,
                dates=self._dates(text, table, context_verb),
            )

        scheduled_phrase = contains_phrase(text, table.scheduled)
        if scheduled_phrase:
            return Classification(
                SubscriptionState.PAUSE_SCHEDULED,
                rule="scheduled_text",
                evidence=scheduled_phrase,
                dates=self._dates(text, table, context_verb),
            )

        pause_control = _visible_match(controls, table.pause)
        if pause_control is not None:
            return Classification(
                SubscriptionState.ACTIVE,
                rule="pause_control",
                evidence=pause_control.text,
                dates=self._dates(text, table, context_verb),
            )

        plan_evidence = self._plan_evidence(text, table)
        if plan_evidence and not contains_phrase(text, table.error_markers):
            return Classification(
                SubscriptionState.ACTIVE,
                rule="plan_text",
                evidence=plan_evidence,
                provisional=True,
            )

        return Classification(SubscriptionState.UNCERTAIN, rule="no_signal")

    @staticmethod
    def _plan_evidence(text: str, table: LocaleTable) -> str:
        price = _PRICE_RE.search(text)
        if price:
            return price.group(0).strip()
        return contains_phrase(text, table.plan_markers) or ""

    def _dates(self, text: str, table: LocaleTable, context_verb: str) -> Tuple[CandidateDate, ...]:
        return tuple(self.date_resolver.resolve(text, table, context_verb))
