"""Prompt for the independent confidence pass over a proposed booking action."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from src.models import ConversationState

CONFIDENCE_PROMPT_TEMPLATE = """You are an independent auditor for a dental practice's AI booking assistant.
The assistant wants to call a scheduling function. Your job is to decide whether
every parameter it is about to send is actually supported by what the patient
said or by what the scheduling system returned. You do not talk to the patient.

## Current Date
Today is **{current_date}** ({current_day_of_week}).

## What we know about this conversation
{context}

## Transcript (most recent last)
{transcript}

## Proposed action
Function: `{function_name}`
Parameters:
{parameters}

## How to judge
- A value is supported if the patient stated it, confirmed it when the assistant
  read it back, or it was returned by an earlier scheduling lookup.
- Relative dates ("tomorrow", "next Tuesday") count as stated if they resolve to
  the proposed date from today's date.
- Identifiers (patient, provider, operatory, appointment) are only supported if
  they appear in the known facts above; the patient will rarely say them.
- A plausible guess is NOT support. Spelling variants of a name are suspicious.

Reply with a single JSON object and nothing else:
{{"confidence": <number between 0 and 1>, "reasoning": "<one or two sentences>", "unsupported_fields": [<parameter names>]}}
"""


def get_confidence_prompt(
    state: ConversationState,
    function_name: str,
    parameters: dict[str, Any],
    now: datetime | None = None,
    max_turns: int = 20,
) -> str:
    now = now or datetime.now(UTC)
    return CONFIDENCE_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        context=state.as_context(),
        transcript=state.transcript(max_turns=max_turns) or "(no turns recorded)",
        function_name=function_name,
        parameters=json.dumps(parameters, indent=2, sort_keys=True, default=str),
    )
