import unittest
from datetime import date

from agents.subscription_agent.dates import DateCandidateResolver
from agents.subscription_agent.locales import get_locale
from agents.subscription_agent.models import (
    ROLE_PAUSE,
    ROLE_RESUME,
    ROLE_SOURCE_CONTEXT,
    ROLE_SOURCE_PHRASE,
    ROLE_SOURCE_PROXIMITY,
)


def _resolver() -> DateCandidateResolver:
    return DateCandidateResolver(today=lambda: date(2026, 3, 1))


class DateCandidateResolverTests(unittest.TestCase):
    def test_phrase_tags_win_regardless_of_order(self) -> None:
        text = "Your membership resumes on Nov 4, 2026. Membership pauses on Oct 4, 2026."
        dates = _resolver().resolve(text, "en", ROLE_PAUSE)

        self.assertEqual([d.iso() for d in dates], ["2026-11-04", "2026-10-04"])
        self.assertEqual([d.role for d in dates], [ROLE_RESUME, ROLE_PAUSE])
        self.assertTrue(all(d.role_source == ROLE_SOURCE_PHRASE for d in dates))

    def test_untagged_dates_use_chronological_order(self) -> None:
        dates = _resolver().resolve("Period: Nov 4, 2026 to Oct 4, 2026", "en", ROLE_RESUME)

        by_iso = {d.iso(): d for d in dates}
        self.assertEqual(by_iso["2026-10-04"].role, ROLE_PAUSE)
        self.assertEqual(by_iso["2026-11-04"].role, ROLE_RESUME)
        self.assertEqual(by_iso["2026-10-04"].role_source, ROLE_SOURCE_PROXIMITY)

    def test_single_untagged_date_takes_context_verb(self) -> None:
        dates = _resolver().resolve("Family membership\nOct 4, 2026", "en", ROLE_RESUME)

        self.assertEqual(len(dates), 1)
        self.assertEqual(dates[0].role, ROLE_RESUME)
        self.assertEqual(dates[0].role_source, ROLE_SOURCE_CONTEXT)

    def test_resolve_is_idempotent(self) -> None:
        resolver = _resolver()
        text = "Membership pauses on Oct 4\nResumes on Jan 4"

        first = resolver.resolve(text, "en", ROLE_PAUSE)
        second = resolver.resolve(text, "en", ROLE_PAUSE)

        self.assertEqual(first, second)

    def test_missing_year_is_inferred_forward(self) -> None:
        dates = _resolver().resolve("Membership pauses on Oct 4\nResumes on Jan 4", "en", ROLE_PAUSE)

        by_role = {d.role: d for d in dates}
        self.assertEqual(by_role[ROLE_PAUSE].iso(), "2026-10-04")
        self.assertEqual(by_role[ROLE_RESUME].iso(), "2027-01-04")

    def test_year_outside_window_is_discarded(self) -> None:
        self.assertEqual(_resolver().resolve("Paused until Jan 5, 2099", "en", ROLE_RESUME), [])

    def test_custom_year_window(self) -> None:
        resolver = DateCandidateResolver(year_min=2020, year_max=2100, today=lambda: date(2026, 3, 1))
        dates = resolver.resolve("Paused until Jan 5, 2099", "en", ROLE_RESUME)
        self.assertEqual([d.iso() for d in dates], ["2099-01-05"])

    def test_iso_date_with_phrase(self) -> None:
        dates = _resolver().resolve("Resume date: 2026-11-04", "en", ROLE_PAUSE)
        self.assertEqual(len(dates), 1)
        self.assertEqual(dates[0].role, ROLE_RESUME)
        self.assertEqual(dates[0].role_source, ROLE_SOURCE_PHRASE)

    def test_korean_verb_after_date(self) -> None:
        dates = _resolver().resolve("멤버십이 2026년 10월 4일에 재개 예정입니다", "ko", ROLE_PAUSE)
        self.assertEqual(len(dates), 1)
        self.assertEqual(dates[0].iso(), "2026-10-04")
        self.assertEqual(dates[0].role, ROLE_RESUME)
        self.assertEqual(dates[0].locale, "ko")

    def test_numeric_day_above_twelve_is_unambiguous(self) -> None:
        dates = _resolver().resolve("Next billing date: 25/10/2026", "en", ROLE_RESUME)
        self.assertEqual(dates[0].iso(), "2026-10-25")
        self.assertEqual(dates[0].role, ROLE_PAUSE)

    def test_duplicate_dates_collapse(self) -> None:
        dates = _resolver().resolve("Oct 4, 2026\nMembership pauses on 2026-10-04", "en", ROLE_RESUME)
        self.assertEqual(len(dates), 1)
        self.assertEqual(dates[0].role, ROLE_PAUSE)

    def test_pick_prefers_phrase_over_proximity(self) -> None:
        dates = _resolver().resolve("Nov 4, 2026 and Dec 4, 2026\nMembership pauses on Oct 4, 2026", "en", ROLE_PAUSE)
        picked = DateCandidateResolver.pick(dates, ROLE_PAUSE)
        self.assertEqual(picked.iso(), "2026-10-04")

    def test_empty_text(self) -> None:
        self.assertEqual(_resolver().resolve("", get_locale("en"), ROLE_PAUSE), [])


if __name__ == "__main__":
    unittest.main()
