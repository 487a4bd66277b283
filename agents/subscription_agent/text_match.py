import re
import unicodedata
from typing import Iterable, Optional

_WS_RE = re.compile(r"\s+")
_TRAILING_PUNCT = ".:!?…·•"


def normalize(text: str) -> str:
    value = unicodedata.normalize("NFKC", str(text or ""))
    value = value.replace("’", "'").replace(" ", " ")
    return _WS_RE.sub(" ", value).strip().casefold()


def label_matches(text: str, label: str) -> bool:
    """Word-bounded label check for control text.

    ``"Pause membership"`` matches ``"Pause"``, but ``"Paused"`` and
    ``"Membership pauses on"`` do not.
    """
    candidate = normalize(text).rstrip(_TRAILING_PUNCT).strip()
    wanted = normalize(label)
    if not candidate or not wanted:
        return False
    if candidate == wanted:
        return True
    if not candidate.startswith(wanted):
        return False
    return candidate[len(wanted)].isspace()


def matching_label(text: str, labels: Iterable[str]) -> Optional[str]:
    for label in labels:
        if label_matches(text, label):
            return label
    return None


def label_equals(text: str, label: str) -> bool:
    return normalize(text).rstrip(_TRAILING_PUNCT).strip() == normalize(label)


def contains_phrase(text: str, phrases: Iterable[str]) -> Optional[str]:
    haystack = normalize(text)
    if not haystack:
        return None
    for phrase in phrases:
        needle = normalize(phrase)
        if needle and needle in haystack:
            return phrase
    return None
