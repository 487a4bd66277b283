import re
from dataclasses import dataclass, replace
from datetime import date
from typing import Callable, Dict, List, Optional, Pattern, Tuple, Union

from agents.subscription_agent.locales import LocaleTable, get_locale
from agents.subscription_agent.models import (
    ROLE_PAUSE,
    ROLE_RESUME,
    ROLE_SOURCE_CONTEXT,
    ROLE_SOURCE_PHRASE,
    ROLE_SOURCE_PROXIMITY,
    ROLE_UNKNOWN,
    CandidateDate,
)
from agents.subscription_agent.text_match import normalize

_LETTER_BEFORE = r"(?<![^\W\d_])"
_LETTER_AFTER = r"(?![^\W\d_])"

_STATIC_PATTERNS: Dict[str, Tuple[str, Tuple[int, int, int]]] = {
    # name: (regex, (year group, month group, day group))
    "iso": (r"(?<!\d)(\d{4})\s*[-/.]\s*(\d{1,2})\s*[-/.]\s*(\d{1,2})(?!\d)", (1, 2, 3)),
    "korean": (r"(?:(\d{4})\s*년\s*)?(\d{1,2})\s*월\s*(\d{1,2})\s*일", (1, 2, 3)),
    "cjk": (r"(?:(\d{4})\s*年\s*)?(\d{1,2})\s*月\s*(\d{1,2})\s*日", (1, 2, 3)),
    "vietnamese": (
        r"(?<!\d)(\d{1,2})\s+(?:thg|tháng)\s+(\d{1,2})(?:,?\s+(?:năm\s+)?(\d{4}))?(?!\d)",
        (3, 2, 1),
    ),
}

_NUMERIC_RE = re.compile(r"(?<!\d)(\d{1,2})\s*[/.\-]\s*(\d{1,2})\s*[/.\-]\s*(\d{4})(?!\d)")

_compiled: Dict[Tuple[str, str], Optional[Pattern]] = {}


@dataclass
class _Match:
    start: int
    end: int
    raw: str
    year: Optional[int]
    month: int
    day: int


def _month_alternation(table: LocaleTable) -> str:
    names = sorted(table.months, key=len, reverse=True)
    return "|".join(re.escape(name) for name in names)


def _compile(name: str, table: LocaleTable) -> Optional[Pattern]:
    key = (name, table.code)
    if key in _compiled:
        return _compiled[key]
    pattern: Optional[Pattern] = None
    if name in _STATIC_PATTERNS:
        pattern = re.compile(_STATIC_PATTERNS[name][0], re.IGNORECASE)
    elif name == "numeric":
        pattern = _NUMERIC_RE
    elif name in {"month_day", "day_month"} and table.months:
        months = _month_alternation(table)
        if name == "month_day":
            source = (
                rf"{_LETTER_BEFORE}({months}){_LETTER_AFTER}\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?(?!\d)"
                rf"(?:,?\s+(\d{{4}}))?(?!\d)"
            )
        else:
            source = (
                rf"(?<!\d)(\d{{1,2}})\.?\s+(?:de\s+)?({months}){_LETTER_AFTER}\.?"
                rf"(?:,?\s+(?:de\s+)?(\d{{4}}))?(?!\d)"
            )
        pattern = re.compile(source, re.IGNORECASE)
    _compiled[key] = pattern
    return pattern


def _as_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


class DateCandidateResolver:
    """Finds calendar dates in locale text and labels each as pause or resume.

    Patterns run in the locale's priority order; text already claimed by an
    earlier pattern is not parsed again. Roles come from the verb phrase in
    front of each date (``role_source="phrase"``). A lone unlabelled date
    takes the caller's context verb (``"context"``); several unlabelled
    dates are ordered in time, the earliest being the pause (next billing)
    date and the latest the resume date (``"proximity"``).
    """

    def __init__(
        self,
        year_min: int = 2020,
        year_max: int = 2035,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.year_min = int(year_min)
        self.year_max = int(year_max)
        self._today = today or date.today

    def resolve(
        self,
        text: str,
        locale: Union[LocaleTable, str],
        context_verb: str = ROLE_PAUSE,
    ) -> List[CandidateDate]:
        table = locale if isinstance(locale, LocaleTable) else get_locale(locale)
        source = str(text or "")
        if not source.strip():
            return []

        matches = self._scan(source, table)
        candidates: List[CandidateDate] = []
        for index, match in enumerate(matches):
            role = self._phrase_role(source, matches, index, table)
            year = match.year
            if year is None:
                year = self._infer_year(match.month, match.day, context_verb)
            if not self._valid(year, match.month, match.day):
                continue
            candidates.append(
                CandidateDate(
                    raw=match.raw,
                    year=year,
                    month=match.month,
                    day=match.day,
                    role=role or ROLE_UNKNOWN,
                    locale=table.code,
                    role_source=ROLE_SOURCE_PHRASE if role else "",
                    position=match.start,
                )
            )

        candidates = self._dedupe(candidates)
        candidates = self._assign_fallback_roles(candidates, context_verb)
        return sorted(candidates, key=lambda item: item.position)

    @staticmethod
    def pick(dates: List[CandidateDate], role: str) -> Optional[CandidateDate]:
        for source in (ROLE_SOURCE_PHRASE, ROLE_SOURCE_CONTEXT, ROLE_SOURCE_PROXIMITY):
            for item in dates:
                if item.role == role and item.role_source == source:
                    return item
        return None

    def _scan(self, text: str, table: LocaleTable) -> List[_Match]:
        found: List[_Match] = []
        claimed: List[Tuple[int, int]] = []
        for name in table.date_patterns:
            pattern = _compile(name, table)
            if pattern is None:
                continue
            for hit in pattern.finditer(text):
                start, end = hit.span()
                if any(start < c_end and c_start < end for c_start, c_end in claimed):
                    continue
                parsed = self._extract(name, hit, table)
                if parsed is None:
                    continue
                year, month, day = parsed
                claimed.append((start, end))
                found.append(_Match(start, end, hit.group(0).strip(), year, month, day))
        found.sort(key=lambda item: item.start)
        return found

    @staticmethod
    def _extract(name: str, hit, table: LocaleTable) -> Optional[Tuple[Optional[int], int, int]]:
        if name in _STATIC_PATTERNS:
            y_group, m_group, d_group = _STATIC_PATTERNS[name][1]
            return _as_int(hit.group(y_group)), int(hit.group(m_group)), int(hit.group(d_group))

        if name == "numeric":
            first, second, year = int(hit.group(1)), int(hit.group(2)), int(hit.group(3))
            if year > 2500:
                # Buddhist calendar
                year -= 543
            if first > 12:
                return year, second, first
            if second > 12:
                return year, first, second
            if table.numeric_order == "mdy":
                return year, first, second
            return year, second, first

        if name == "month_day":
            month = table.months.get(hit.group(1).casefold())
            if month is None:
                return None
            return _as_int(hit.group(3)), month, int(hit.group(2))

        if name == "day_month":
            month = table.months.get(hit.group(2).casefold())
            if month is None:
                return None
            return _as_int(hit.group(3)), month, int(hit.group(1))

        return None

    def _phrase_role(self, text: str, matches: List[_Match], index: int, table: LocaleTable) -> Optional[str]:
        match = matches[index]
        line_start = text.rfind("\n", 0, match.start) + 1
        previous_end = matches[index - 1].end if index > 0 else 0
        before = normalize(text[max(line_start, previous_end):match.start])
        role = self._nearest_phrase(before, table, from_end=True)
        if role is None and table.verb_after_date:
            line_end = text.find("\n", match.end)
            if line_end < 0:
                line_end = len(text)
            next_start = matches[index + 1].start if index + 1 < len(matches) else len(text)
            after = normalize(text[match.end:min(line_end, next_start)])
            role = self._nearest_phrase(after, table, from_end=False)
        return role

    @staticmethod
    def _nearest_phrase(segment: str, table: LocaleTable, from_end: bool) -> Optional[str]:
        if not segment:
            return None
        best_role = None
        best_index = -1
        for role, phrases in ((ROLE_PAUSE, table.pause_phrases), (ROLE_RESUME, table.resume_phrases)):
            for phrase in phrases:
                needle = normalize(phrase)
                if not needle:
                    continue
                position = segment.rfind(needle) if from_end else segment.find(needle)
                if position < 0:
                    continue
                if from_end:
                    better = position + len(needle) > best_index
                    score = position + len(needle)
                else:
                    better = best_index < 0 or position < best_index
                    score = position
                if better:
                    best_role = role
                    best_index = score
        return best_role

    def _infer_year(self, month: int, day: int, context_verb: str) -> int:
        today = self._today()
        this_year = today.year
        if context_verb == ROLE_RESUME:
            if (month, day) < (today.month, today.day):
                return this_year + 1
            return this_year
        if (month, day) <= (today.month, today.day):
            return this_year + 1
        return this_year

    def _valid(self, year: int, month: int, day: int) -> bool:
        if year < self.year_min or year > self.year_max:
            return False
        try:
            date(year, month, day)
        except ValueError:
            return False
        return True

    @staticmethod
    def _dedupe(candidates: List[CandidateDate]) -> List[CandidateDate]:
        by_day: Dict[Tuple[int, int, int], CandidateDate] = {}
        for item in candidates:
            key = (item.year, item.month, item.day)
            kept = by_day.get(key)
            if kept is None or (kept.role == ROLE_UNKNOWN and item.role != ROLE_UNKNOWN):
                by_day[key] = item
        return list(by_day.values())

    @staticmethod
    def _assign_fallback_roles(candidates: List[CandidateDate], context_verb: str) -> List[CandidateDate]:
        unknown = [item for item in candidates if item.role == ROLE_UNKNOWN]
        if not unknown:
            return candidates

        if len(candidates) == 1:
            only = candidates[0]
            verb = context_verb if context_verb in {ROLE_PAUSE, ROLE_RESUME} else ROLE_PAUSE
            return [_with_role(only, verb, ROLE_SOURCE_CONTEXT)]

        taken = {item.role for item in candidates if item.role != ROLE_UNKNOWN}
        ordered = sorted(unknown, key=lambda item: (item.as_date(), item.position))
        assigned: Dict[int, CandidateDate] = {}
        if ROLE_PAUSE not in taken and ordered:
            first = ordered.pop(0)
            assigned[first.position] = _with_role(first, ROLE_PAUSE, ROLE_SOURCE_PROXIMITY)
        if ROLE_RESUME not in taken and ordered:
            last = ordered.pop()
            assigned[last.position] = _with_role(last, ROLE_RESUME, ROLE_SOURCE_PROXIMITY)
        return [assigned.get(item.position, item) for item in candidates]


def _with_role(item: CandidateDate, role: str, source: str) -> CandidateDate:
    return replace(item, role=role, role_source=source)
