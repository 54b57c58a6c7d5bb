"""CLI console for the booking firewall.

Replays a conversation by hand against a local firewall and shows what
the validator would decide.  For production, use the FastAPI server
(src/server.py).

Usage:
    uv run python -m src.main            # normal mode (quiet)
    uv run python -m src.main --debug    # debug mode (shows validator internals)

Input lines:
    plain text                     a user turn
    :text                          an assistant turn
    /validate Fn {json}            validate a proposed action
    /call Fn {params} [{result}]   record a successful tool call
    /autofill Fn                   show parameters the session can supply
    /state                         dump the conversation state
    /stats                         validation statistics
    /new                           start a new session
    /quit                          exit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid

from dotenv import load_dotenv

from src.firewall import FirewallService, create_firewall_service
from src.models import Role

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def _split_json_args(raw: str) -> list:
    """Decode consecutive JSON values from *raw* (e.g. ``{..} {..}``)."""
    decoder = json.JSONDecoder()
    values = []
    index = 0
    raw = raw.strip()
    while index < len(raw):
        value, end = decoder.raw_decode(raw, index)
        values.append(value)
        index = end
        while index < len(raw) and raw[index].isspace():
            index += 1
    return values


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _handle_command(firewall: FirewallService, session_id: str, line: str) -> None:
    command, _, rest = line[1:].partition(" ")
    command = command.lower()

    if command == "validate":
        function_name, _, raw = rest.strip().partition(" ")
        args = _split_json_args(raw) if raw.strip() else [{}]
        decision = await firewall.validate(session_id, function_name, args[0])
        _print_json(decision.model_dump(mode="json"))
    elif command == "call":
        function_name, _, raw = rest.strip().partition(" ")
        args = _split_json_args(raw) if raw.strip() else []
        parameters = args[0] if args else {}
        result = args[1] if len(args) > 1 else None
        state = await firewall.record_function_call(session_id, function_name, parameters, result)
        print(f">> Recorded {function_name}. Missing: {', '.join(state.missing_required) or 'nothing'}")
    elif command == "autofill":
        _print_json(await firewall.autofill(session_id, rest.strip()))
    elif command == "state":
        state = await firewall.get_state(session_id)
        _print_json(state.model_dump(mode="json") if state else None)
    elif command == "stats":
        stats = await firewall.validation_stats()
        _print_json(stats.model_dump(mode="json"))
    else:
        print(f">> Unknown command: /{command}")


async def _run() -> None:
    print("\n" + "=" * 60)
    print("  Booking Action Firewall - CLI Console")
    print("=" * 60)
    print("  Type a user turn, ':text' for an assistant turn,")
    print("  or a /command (/validate, /call, /autofill, /state,")
    print("  /stats, /new, /quit).")
    print("=" * 60 + "\n")

    firewall = create_firewall_service(with_reaper=False)
    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s", session_id)

    try:
        while True:
            try:
                line = input("> ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not line:
                continue

            if line.lower() in ("/quit", "/exit", "quit", "exit"):
                print("\nGoodbye!")
                break

            if line.lower() == "/new":
                await firewall.clear_session(session_id)
                session_id = str(uuid.uuid4())
                print(f"\n>> New session started: {session_id[:8]}...\n")
                continue

            try:
                if line.startswith("/"):
                    await _handle_command(firewall, session_id, line)
                elif line.startswith(":"):
                    await firewall.process_message(session_id, line[1:].strip(), Role.ASSISTANT)
                else:
                    state = await firewall.process_message(session_id, line, Role.USER)
                    print(f">> Intent: {state.intent.value}. Missing: "
                          f"{', '.join(state.missing_required) or 'nothing'}")
            except json.JSONDecodeError as e:
                print(f">> Could not parse JSON arguments: {e}")
            except Exception as e:
                logger.exception("Error handling input")
                print(f">> Something went wrong: {e}")
    finally:
        await firewall.shutdown()


def main():
    """Run the interactive firewall console."""
    parser = argparse.ArgumentParser(description="Booking Action Firewall CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including validator decisions",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
