"""Booking Action Firewall: a validation layer for booking agents.

Architecture Overview
=====================

An LLM agent that books dental appointments talks to a scheduling system
through tool calls.  The firewall sits between the two: it follows the
conversation and checks every state-mutating call before it runs.

1. **Session state**: each dialogue turn is run through a rule-based
   parameter extractor.  Patient and appointment facts accumulate per
   session; successful tool calls confirm them as ground truth.

2. **Action validation**: a LangGraph ``StateGraph`` with the nodes
   policy gate, ground truth, conflict check, confidence and decide.
   Every proposal ends in one of allow, correct, block or retry, and each
   decision is written to the hallucination log.

Key Design Decisions
--------------------
- **Ground truth first**: values the session already knows win over what
  the agent proposes; a known patient name or phone is corrected in place
  rather than rejected.
- **Fail safe**: if settings cannot be loaded the strictest defaults are
  used; timeouts and validator errors count as zero confidence.
- **Confidence scoring**: Claude via ``langchain-anthropic`` in production;
  a deterministic heuristic scorer for local runs and tests.
- **Per-session locking**: turns, tool-call records and validations for one
  session are serialized; different sessions run concurrently.
- **Dual Interface**: FastAPI server (production) + CLI console (development).

Package Structure
-----------------
- ``src/models.py``: Pydantic domain types
- ``src/functions.py``: scheduling function schemas and value parsers
- ``src/extraction.py``: rule-based parameter extraction
- ``src/session_store.py``: per-session state, locks and the reaper
- ``src/conflicts.py``: double-booking detection
- ``src/scoring.py``: confidence scorers
- ``src/validator.py``: the validation graph
- ``src/audit.py``: hallucination log and statistics
- ``src/firewall.py``: service facade used by the API and the CLI
- ``src/services/``: scheduling client, settings store, cache, metrics
- ``src/api/``: FastAPI routes and Pydantic schemas
"""
