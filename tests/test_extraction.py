"""Tests for the rule-based parameter extractor."""

from __future__ import annotations

import re
from datetime import date

import pytest

from src.extraction import (
    DEFAULT_RULES,
    ExtractionError,
    ExtractionRule,
    IntentRule,
    ParameterExtractor,
    extract,
)
from src.models import Intent

# Monday
REF = date(2026, 10, 19)


# ── Patient fields ──────────────────────────────────────────────────


class TestPatientRules:
    def test_name_stops_at_connector(self):
        result = extract("Hi, my name is John Smith and I'd like to book a cleaning", REF)
        assert result.updates["patient.name"] == "John Smith"

    def test_name_is_title_cased(self):
        result = extract("this is maria lopez calling", REF)
        assert result.updates["patient.name"] == "Maria Lopez"

    def test_im_followed_by_stopword_is_not_a_name(self):
        result = extract("I'm looking for an appointment", REF)
        assert "patient.name" not in result.updates

    @pytest.mark.parametrize(
        "text", ["Hi, I'm having a toothache", "i'm calling about my filling", "I am worried about a crown"],
    )
    def test_im_sentence_is_not_a_name(self, text):
        assert "patient.name" not in extract(text, REF).updates

    def test_capitalised_self_introduction_is_tentative(self):
        result = extract("Hi, I'm John Smith", REF)
        assert result.updates["patient.name"] == "John Smith"
        assert result.is_tentative("patient.name")
        assert not extract("my name is John Smith", REF).is_tentative("patient.name")

    @pytest.mark.parametrize("raw", ["555-123-4567", "(555) 123-4567", "555.123.4567", "+1 555 123 4567"])
    def test_phone_formats(self, raw):
        result = extract(f"my number is {raw}", REF)
        assert result.updates["patient.phone"] == "5551234567"

    def test_email_is_lower_cased(self):
        result = extract("email me at Jane.Doe@Example.com", REF)
        assert result.updates["patient.email"] == "jane.doe@example.com"

    def test_birth_date_requires_birth_keyword(self):
        result = extract("I was born on 03/15/1985", REF)
        assert result.updates["patient.date_of_birth"] == "1985-03-15"
        assert "appointment.date" not in result.updates

    def test_birth_date_month_name(self):
        result = extract("my date of birth is March 3, 1990", REF)
        assert result.updates["patient.date_of_birth"] == "1990-03-03"

    def test_new_patient_flag(self):
        result = extract("I'm a new patient", REF)
        assert result.updates["patient.is_new_patient"] is True


# ── Appointment fields ──────────────────────────────────────────────


class TestAppointmentRules:
    def test_tomorrow_at_two_pm(self):
        result = extract("Can I come in tomorrow at 2pm?", REF)
        assert result.updates["appointment.date"] == "2026-10-20"
        assert result.updates["appointment.time"] == "14:00"

    def test_day_after_tomorrow(self):
        result = extract("the day after tomorrow works", REF)
        assert result.updates["appointment.date"] == "2026-10-21"

    def test_iso_date(self):
        assert extract("2026-11-02 please", REF).updates["appointment.date"] == "2026-11-02"

    def test_month_day_without_year_rolls_forward(self):
        assert extract("how about January 5", REF).updates["appointment.date"] == "2027-01-05"

    def test_slash_date_without_year(self):
        assert extract("10/23 would be great", REF).updates["appointment.date"] == "2026-10-23"

    def test_next_weekday(self):
        assert extract("next Friday", REF).updates["appointment.date"] == "2026-10-23"

    def test_same_weekday_means_next_week(self):
        assert extract("Monday works", REF).updates["appointment.date"] == "2026-10-26"

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("10:30 am", "10:30"),
            ("at 9am", "09:00"),
            ("12 pm", "12:00"),
            ("14:15", "14:15"),
            ("around noon", "12:00"),
            ("at 3", "15:00"),
            ("at 10", "10:00"),
        ],
    )
    def test_times(self, text, expected):
        assert extract(text, REF).updates["appointment.time"] == expected

    def test_time_preference(self):
        assert extract("mornings are best", REF).updates["appointment.time_preference"] == "morning"

    def test_appointment_type(self):
        assert extract("I need a root canal", REF).updates["appointment.appointment_type"] == "root canal"
        assert extract("just a cleaning", REF).updates["appointment.appointment_type"] == "cleaning"

    def test_provider_by_name_and_number(self):
        assert extract("with Dr. Patel", REF).updates["appointment.provider"] == "Dr. Patel"
        assert extract("provider 3 is fine", REF).updates["appointment.provider"] == "3"

    def test_operatory(self):
        assert extract("room 2 please", REF).updates["appointment.operatory"] == "2"

    @pytest.mark.parametrize(
        "text, minutes",
        [("45 minutes", 45), ("half an hour", 30), ("an hour", 60), ("an hour and a half", 90)],
    )
    def test_length(self, text, minutes):
        assert extract(text, REF).updates["appointment.length_minutes"] == minutes


# ── Corrections & intent ────────────────────────────────────────────


class TestCorrectionsAndIntent:
    def test_actually_marks_correction(self):
        result = extract("Actually, my name is Jon Smith", REF)
        assert result.updates["patient.name"] == "Jon Smith"
        assert result.is_correction("patient.name")

    def test_no_prefix_marks_correction(self):
        result = extract("No, my number is 555-987-6543", REF)
        assert result.is_correction("patient.phone")

    def test_plain_statement_is_not_correction(self):
        result = extract("my name is Jon Smith", REF)
        assert result.corrections == set()

    def test_marker_without_values_yields_no_corrections(self):
        assert extract("actually, hold on", REF).corrections == set()

    @pytest.mark.parametrize(
        "text, intent",
        [
            ("I'd like to book an appointment", Intent.BOOK),
            ("I need to cancel my appointment", Intent.CANCEL),
            ("can I reschedule?", Intent.RESCHEDULE),
            ("I want to move my appointment", Intent.RESCHEDULE),
            ("do you take insurance?", Intent.INQUIRY),
            ("I'd like a cleaning next week", Intent.BOOK),
        ],
    )
    def test_intents(self, text, intent):
        assert extract(text, REF).intent == intent

    def test_cancel_wins_over_book(self):
        assert extract("cancel the booking", REF).intent == Intent.CANCEL

    def test_restart_without_new_intent(self):
        result = extract("never mind, start over", REF)
        assert result.restart is True
        assert result.intent is None

    def test_restart_followed_by_intent(self):
        result = extract("forget that, I want to book a cleaning", REF)
        assert result.restart is True
        assert result.intent == Intent.BOOK

    def test_no_signal(self):
        result = extract("hello there", REF)
        assert result.intent is None
        assert result.updates == {}


# ── Malformed input ─────────────────────────────────────────────────


class TestMalformedInput:
    def test_non_text_raises(self):
        with pytest.raises(ExtractionError):
            extract(12345, REF)

    def test_nul_bytes_raise(self):
        with pytest.raises(ExtractionError):
            extract("my name is\x00 Bob", REF)

    def test_impossible_date_raises(self):
        with pytest.raises(ExtractionError):
            extract("can I come on 2/30?", REF)

    def test_rule_value_error_is_wrapped(self):
        def _boom(_text, _ref):
            raise ValueError("bad")

        extractor = ParameterExtractor(rules=(ExtractionRule("boom", "patient.name", 1, _boom),))
        with pytest.raises(ExtractionError, match="boom"):
            extractor.extract("anything", REF)


# ── Rule ordering ───────────────────────────────────────────────────


class TestRuleOrdering:
    def test_first_rule_for_a_field_wins(self):
        extra = ExtractionRule("nickname", "patient.name", 5, lambda _t, _r: "Johnny")
        extractor = ParameterExtractor(rules=(*DEFAULT_RULES, extra))
        result = extractor.extract("my name is John Smith", REF)
        assert result.updates["patient.name"] == "Johnny"
        assert result.rules_fired[0] == "nickname"

    def test_custom_intent_rules(self):
        rules = (IntentRule("emergency", Intent.BOOK, re.compile(r"\btoothache\b", re.I), 1),)
        extractor = ParameterExtractor(intent_rules=rules)
        assert extractor.extract("terrible toothache", REF).intent == Intent.BOOK

    def test_reference_defaults_to_today(self):
        result = ParameterExtractor().extract("today")
        assert result.updates["appointment.date"] == date.today().isoformat()
