"""Rule-based parameter extraction from dialogue turns.

Each rule is a small declarative object (name, target entity path,
priority, matcher) so it can be unit-tested against a fixed transcript.
Rules run in priority order; for every entity path the first rule that
yields a value wins.  Intent rules work the same way: the first matching
rule is the turn's intent signal.

A turn that contains a correction marker ("actually", "I meant",
"no, my name is ...") tags every field it yields as a correction, which
is what allows the session store to overwrite an already-filled slot.

Extraction is pure: no I/O, no state, and the only clock input is the
``reference`` date used to resolve relative dates such as "tomorrow".
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from src.functions import canonical_phone
from src.models import Intent

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Raised when a turn cannot be parsed (non-text input, impossible dates)."""


@dataclass
class Extraction:
    updates: dict[str, Any] = field(default_factory=dict)
    corrections: set[str] = field(default_factory=set)
    tentative: set[str] = field(default_factory=set)
    intent: Intent | None = None
    restart: bool = False
    rules_fired: list[str] = field(default_factory=list)

    def is_correction(self, path: str) -> bool:
        return path in self.corrections

    def is_tentative(self, path: str) -> bool:
        return path in self.tentative


Matcher = Callable[[str, date], Any]


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    field: str
    priority: int
    match: Matcher
    # Optional guard on the whole turn (e.g. "mentions a birth date").
    when: Callable[[str], bool] | None = None
    # Tentative values fill an empty slot but yield to any firm value later.
    tentative: bool = False


@dataclass(frozen=True)
class IntentRule:
    name: str
    # ``None`` marks a restart signal rather than an intent.
    intent: Intent | None
    pattern: re.Pattern[str]
    priority: int


# ── Shared vocabulary ───────────────────────────────────────────────

_MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_NAME_STOP = {
    "a", "actually", "afraid", "also", "an", "and", "at", "available", "booking",
    "but", "calling", "correct", "doctor", "dr", "fine", "for", "free", "from",
    "glad", "going", "good", "great", "happy", "here", "hoping", "i", "important",
    "in", "interested", "is", "it", "just", "like", "looking", "my", "need", "new",
    "not", "number", "of", "ok", "okay", "on", "patient", "perfect", "phone",
    "please", "ready", "really", "right", "so", "sorry", "still", "sure", "the",
    "to", "trying", "urgent", "very", "want", "was", "wondering", "with", "would",
    "wrong", "yes",
}

_NAME_PATTERNS = [
    re.compile(r"\bmy name is (?:actually\s+)?([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*){0,3})", re.I),
    re.compile(r"\bname'?s (?:actually\s+)?([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*){0,3})", re.I),
    re.compile(r"\bthis is ([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*){0,3})", re.I),
]

# "I'm ..." only introduces a name when the words are written as one.
_SELF_INTRO_RE = re.compile(r"\b(?:i am|i'?m) ([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*){0,3})", re.I)

_PHONE_RE = re.compile(
    r"(?<!\d)(?:\+?1[\s.-]?)?\(?(\d{3})\)?[\s.-]?(\d{3})[\s.-]?(\d{4})(?!\d)"
)
_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)+\b")
_BIRTH_RE = re.compile(r"\b(born|birth|birthday|dob|d\.o\.b)\b", re.I)

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_DATE_RE = re.compile(r"(?<![\d/])(\d{1,2})/(\d{1,2})(?:/(\d{2}|\d{4}))?(?![\d/])")
_MONTH_DAY_YEAR_RE = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?(?:,?\s+(\d{{4}}))?\b", re.I,
)
_DAY_MONTH_YEAR_RE = re.compile(
    rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH_ALT})\.?(?:,?\s+(\d{{4}}))?\b", re.I,
)
_WEEKDAY_RE = re.compile(rf"\b(?:(this|next)\s+)?({'|'.join(_WEEKDAYS)})\b", re.I)

_MERIDIEM_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s?m\b\.?", re.I)
_CLOCK_TIME_RE = re.compile(r"(?<![\d/:-])([01]?\d|2[0-3]):([0-5]\d)(?![\d:])")
_AT_HOUR_RE = re.compile(r"\bat (\d{1,2})(?:\s*o'?clock)?\b(?!\s*(?::|/|\d|[ap]\.?\s?m))", re.I)

_PREFERENCE_RE = re.compile(r"\b(morning|afternoon|evening)s?\b", re.I)

_APPOINTMENT_TYPES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\broot canal\b", re.I), "root canal"),
    (re.compile(r"\bclean(?:ing)?\b", re.I), "cleaning"),
    (re.compile(r"\b(?:check-?\s?up|exam(?:ination)?)\b", re.I), "checkup"),
    (re.compile(r"\bfill(?:ing)?\b", re.I), "filling"),
    (re.compile(r"\bcrown\b", re.I), "crown"),
    (re.compile(r"\b(?:extraction|extract|pull(?:ed)? (?:a|my) tooth)\b", re.I), "extraction"),
    (re.compile(r"\bwhiten(?:ing)?\b", re.I), "whitening"),
    (re.compile(r"\bemergency\b", re.I), "emergency"),
]

_PROVIDER_NAME_RE = re.compile(r"\b(?:dr\.?|doctor)\s+([a-z][a-z'-]+)", re.I)
_PROVIDER_NUM_RE = re.compile(r"\bprovider\s*(?:number|no\.?|#)?\s*(\d+)\b", re.I)
_OPERATORY_RE = re.compile(r"\b(?:operatory|op|room|chair)\s*(?:number|no\.?|#)?\s*(\d+)\b", re.I)

_LENGTH_MINUTES_RE = re.compile(r"\b(\d{2,3})\s*-?\s*min(?:ute)?s?\b", re.I)
_HOUR_AND_HALF_RE = re.compile(r"\b(?:an|one) hour and a half\b|\b90 minutes\b", re.I)
_HALF_HOUR_RE = re.compile(r"\bhalf an hour\b", re.I)
_ONE_HOUR_RE = re.compile(r"\b(?:an|one) hour\b", re.I)

_NEW_PATIENT_RE = re.compile(r"\bnew patient\b|\bi'?m new\b|\bfirst (?:time|visit)\b", re.I)

_CORRECTION_RE = re.compile(
    r"\b(?:actually|i meant|correction|that'?s (?:wrong|not right|incorrect))\b"
    r"|^\s*no[,.!]?\s+(?:it'?s|my|the|i said|that)\b",
    re.I,
)


# ── Matchers ────────────────────────────────────────────────────────


def _name(text: str, _ref: date) -> str | None:
    for pattern in _NAME_PATTERNS:
        for match in pattern.finditer(text):
            words: list[str] = []
            for word in match.group(1).split():
                if word.lower().strip("'") in _NAME_STOP:
                    break
                words.append(word)
            if words:
                return " ".join(w[:1].upper() + w[1:] for w in words)
    return None


def _self_introduction(text: str, _ref: date) -> str | None:
    for match in _SELF_INTRO_RE.finditer(text):
        words: list[str] = []
        for word in match.group(1).split():
            lowered = word.lower().strip("'")
            if not word[:1].isupper() or lowered in _NAME_STOP or lowered.endswith(("ing", "ed")):
                break
            words.append(word)
        if words:
            return " ".join(words)
    return None


def _phone(text: str, _ref: date) -> str | None:
    match = _PHONE_RE.search(text)
    if not match:
        return None
    return canonical_phone("".join(match.groups()))


def _email(text: str, _ref: date) -> str | None:
    match = _EMAIL_RE.search(text)
    return match.group(0).lower() if match else None


def _safe_date(year: int, month: int, day: int) -> date:
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ExtractionError(f"impossible calendar date {year}-{month}-{day}") from exc


def _expand_year(raw: str) -> int:
    year = int(raw)
    if len(raw) == 2:
        year += 1900 if year >= 50 else 2000
    return year


def _birth_date(text: str, _ref: date) -> str | None:
    match = _ISO_DATE_RE.search(text)
    if match:
        return _safe_date(*map(int, match.groups())).isoformat()

    match = _US_DATE_RE.search(text)
    if match and match.group(3):
        month, day = int(match.group(1)), int(match.group(2))
        return _safe_date(_expand_year(match.group(3)), month, day).isoformat()

    match = _MONTH_DAY_YEAR_RE.search(text)
    if match and match.group(3):
        month = _MONTHS[match.group(1).lower()]
        return _safe_date(int(match.group(3)), month, int(match.group(2))).isoformat()

    match = _DAY_MONTH_YEAR_RE.search(text)
    if match and match.group(3):
        month = _MONTHS[match.group(2).lower()]
        return _safe_date(int(match.group(3)), month, int(match.group(1))).isoformat()
    return None


def _next_on_or_after(candidate: date, ref: date) -> date:
    """Roll a month/day without a year forward to its next occurrence."""
    if candidate < ref:
        return _safe_date(candidate.year + 1, candidate.month, candidate.day)
    return candidate


def _appointment_date(text: str, ref: date) -> str | None:
    match = _ISO_DATE_RE.search(text)
    if match:
        return _safe_date(*map(int, match.groups())).isoformat()

    match = _US_DATE_RE.search(text)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        if match.group(3):
            return _safe_date(_expand_year(match.group(3)), month, day).isoformat()
        return _next_on_or_after(_safe_date(ref.year, month, day), ref).isoformat()

    for pattern, month_group, day_group in (
        (_MONTH_DAY_YEAR_RE, 1, 2),
        (_DAY_MONTH_YEAR_RE, 2, 1),
    ):
        match = pattern.search(text)
        if match:
            month = _MONTHS[match.group(month_group).lower()]
            day = int(match.group(day_group))
            if match.group(3):
                return _safe_date(int(match.group(3)), month, day).isoformat()
            return _next_on_or_after(_safe_date(ref.year, month, day), ref).isoformat()

    lower = text.lower()
    if re.search(r"\bday after tomorrow\b", lower):
        return (ref + timedelta(days=2)).isoformat()
    if re.search(r"\btomorrow\b", lower):
        return (ref + timedelta(days=1)).isoformat()
    if re.search(r"\btoday\b", lower):
        return ref.isoformat()

    match = _WEEKDAY_RE.search(text)
    if match:
        target = _WEEKDAYS.index(match.group(2).lower())
        days_ahead = (target - ref.weekday()) % 7 or 7
        return (ref + timedelta(days=days_ahead)).isoformat()
    return None


def _format_clock(hour: int, minute: int) -> str | None:
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def _appointment_time(text: str, _ref: date) -> str | None:
    match = _MERIDIEM_TIME_RE.search(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
        if not 1 <= hour <= 12:
            return None
        if match.group(3).lower() == "p" and hour < 12:
            hour += 12
        elif match.group(3).lower() == "a" and hour == 12:
            hour = 0
        return _format_clock(hour, minute)

    match = _CLOCK_TIME_RE.search(text)
    if match:
        return _format_clock(int(match.group(1)), int(match.group(2)))

    if re.search(r"\b(?:at )?noon\b", text, re.I):
        return "12:00"

    match = _AT_HOUR_RE.search(text)
    if match:
        hour = int(match.group(1))
        if not 1 <= hour <= 12:
            return None
        # Bare "at 3" during office hours means the afternoon.
        if hour <= 6:
            hour += 12
        return _format_clock(hour, 0)
    return None


def _time_preference(text: str, _ref: date) -> str | None:
    match = _PREFERENCE_RE.search(text)
    return match.group(1).lower() if match else None


def _appointment_type(text: str, _ref: date) -> str | None:
    for pattern, label in _APPOINTMENT_TYPES:
        if pattern.search(text):
            return label
    return None


def _provider(text: str, _ref: date) -> str | None:
    match = _PROVIDER_NUM_RE.search(text)
    if match:
        return match.group(1)
    match = _PROVIDER_NAME_RE.search(text)
    if match and match.group(1).lower() not in _NAME_STOP:
        return f"Dr. {match.group(1).capitalize()}"
    return None


def _operatory(text: str, _ref: date) -> str | None:
    match = _OPERATORY_RE.search(text)
    return match.group(1) if match else None


def _length(text: str, _ref: date) -> int | None:
    if _HOUR_AND_HALF_RE.search(text):
        return 90
    match = _LENGTH_MINUTES_RE.search(text)
    if match:
        return int(match.group(1))
    if _HALF_HOUR_RE.search(text):
        return 30
    if _ONE_HOUR_RE.search(text):
        return 60
    return None


def _new_patient(text: str, _ref: date) -> bool | None:
    return True if _NEW_PATIENT_RE.search(text) else None


def _mentions_birth(text: str) -> bool:
    return bool(_BIRTH_RE.search(text))


def _no_birth_mention(text: str) -> bool:
    return not _BIRTH_RE.search(text)


DEFAULT_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule("patient_name", "patient.name", 10, _name),
    ExtractionRule("self_introduction", "patient.name", 15, _self_introduction, tentative=True),
    ExtractionRule("phone_number", "patient.phone", 20, _phone),
    ExtractionRule("birth_date", "patient.date_of_birth", 30, _birth_date, when=_mentions_birth),
    ExtractionRule("email", "patient.email", 40, _email),
    ExtractionRule("new_patient", "patient.is_new_patient", 50, _new_patient),
    ExtractionRule("appointment_date", "appointment.date", 60, _appointment_date, when=_no_birth_mention),
    ExtractionRule("appointment_time", "appointment.time", 70, _appointment_time, when=_no_birth_mention),
    ExtractionRule("time_preference", "appointment.time_preference", 80, _time_preference),
    ExtractionRule("appointment_type", "appointment.appointment_type", 90, _appointment_type),
    ExtractionRule("provider", "appointment.provider", 100, _provider),
    ExtractionRule("operatory", "appointment.operatory", 110, _operatory),
    ExtractionRule("length", "appointment.length_minutes", 120, _length),
)

DEFAULT_INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        "restart",
        None,
        re.compile(r"\b(?:start over|start again|never ?mind|forget (?:that|it|everything))\b", re.I),
        0,
    ),
    IntentRule("cancel", Intent.CANCEL, re.compile(r"\bcancel\w*\b", re.I), 10),
    IntentRule(
        "reschedule",
        Intent.RESCHEDULE,
        re.compile(
            r"\bre-?schedul\w*\b"
            r"|\b(?:move|change|push back|shift) (?:my|the) appointment\b",
            re.I,
        ),
        20,
    ),
    IntentRule(
        "book",
        Intent.BOOK,
        re.compile(
            r"\bbook\w*\b|\bschedul\w*\b"
            r"|\b(?:make|set up|need|want|like|get) an appointment\b"
            r"|\b(?:i'?d like|i want|i need|can i get|looking for)\b.*"
            r"\b(?:cleaning|check-?\s?up|exam|filling|crown|root canal|extraction|whitening)\b",
            re.I,
        ),
        30,
    ),
    IntentRule(
        "inquiry",
        Intent.INQUIRY,
        re.compile(
            r"\b(?:what time|when is|opening hours|your hours|how much|price|cost"
            r"|do you (?:take|accept|offer)|insurance|where are you|address)\b",
            re.I,
        ),
        40,
    ),
)


class ParameterExtractor:
    """Runs an ordered set of extraction and intent rules over one turn."""

    def __init__(
        self,
        rules: tuple[ExtractionRule, ...] = DEFAULT_RULES,
        intent_rules: tuple[IntentRule, ...] = DEFAULT_INTENT_RULES,
    ) -> None:
        self._rules = sorted(rules, key=lambda r: r.priority)
        self._intent_rules = sorted(intent_rules, key=lambda r: r.priority)

    def extract(self, text: Any, reference: date | None = None) -> Extraction:
        """Map one dialogue turn to candidate entity updates.

        Raises ``ExtractionError`` for input that cannot be interpreted;
        in that case nothing from the turn should be applied.
        """
        if not isinstance(text, str):
            raise ExtractionError(f"turn content must be text, got {type(text).__name__}")
        if "\x00" in text:
            raise ExtractionError("turn content contains NUL bytes")

        ref = reference or date.today()
        result = Extraction()
        for rule in self._rules:
            if rule.field in result.updates:
                continue
            if rule.when is not None and not rule.when(text):
                continue
            try:
                value = rule.match(text, ref)
            except ExtractionError:
                raise
            except (ValueError, IndexError, KeyError) as exc:
                raise ExtractionError(f"rule {rule.name} failed: {exc}") from exc
            if value is None:
                continue
            result.updates[rule.field] = value
            if rule.tentative:
                result.tentative.add(rule.field)
            result.rules_fired.append(rule.name)

        if result.updates and _CORRECTION_RE.search(text):
            result.corrections = set(result.updates)

        for intent_rule in self._intent_rules:
            if not intent_rule.pattern.search(text):
                continue
            if intent_rule.intent is None:
                result.restart = True
                result.rules_fired.append(intent_rule.name)
                continue
            result.intent = intent_rule.intent
            result.rules_fired.append(intent_rule.name)
            break

        logger.debug("Extraction fired rules: %s", result.rules_fired)
        return result


_default_extractor = ParameterExtractor()


def extract(text: Any, reference: date | None = None) -> Extraction:
    """Module-level shortcut using the default rule set."""
    return _default_extractor.extract(text, reference)
