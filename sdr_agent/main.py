"""CLI entry point for the SDR agent.

Usage:
    python -m sdr_agent.main chat [--phone 5511999999999] [--debug]
    python -m sdr_agent.main reactivate run|analyze|send|stats [--debug]
    python -m sdr_agent.main summarize [--limit 10] [--delay 1.0]

``chat`` runs turns through the same processor the worker uses, against
the configured database and calendars, but prints the replies instead of
sending them.  ``reactivate`` runs one reactivation phase once, which is
what a cron job calls.  ``summarize`` fills in dashboard summaries for the
most recently active conversations that have none.
"""

from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from dataclasses import asdict

from sdr_agent.bootstrap import build_components
from sdr_agent.config import DEFAULT_INSTANCE
from sdr_agent.services.metrics import metrics
from sdr_agent.services.work_queue import WorkUnit

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("sdr_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def _chat(components, phone: str) -> None:
    print("\n" + "=" * 60)
    print("  WhatsApp SDR Agent - CLI Chat")
    print("=" * 60)
    print(f"  Talking as {phone}. Replies are printed, not sent.")
    print("  Commands: 'quit' to exit.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("Você: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nTchau!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            print("\nTchau!")
            break

        unit = WorkUnit(
            instance=DEFAULT_INSTANCE,
            phone=phone,
            text=user_input,
            name=None,
            message_id=f"cli-{uuid.uuid4().hex[:12]}",
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            reply = components.processor.process(unit)
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nBot: [erro: {e}]\n")
            continue
        print(f"\nBot: {reply}\n" if reply else "\n[sem resposta: bot desativado]\n")


def _reactivate(components, action: str) -> None:
    scheduler = components.reactivation
    if action == "run":
        result = scheduler.run_cycle()
    elif action == "analyze":
        result = scheduler.analyze_and_queue().to_dict()
    elif action == "send":
        result = scheduler.process_send_queue().to_dict()
    else:
        result = scheduler.stats()
    print(json.dumps(result, ensure_ascii=False, indent=2, default=str))


def main():
    parser = argparse.ArgumentParser(description="WhatsApp SDR Agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    chat = commands.add_parser("chat", help="Local chat loop through the processor")
    chat.add_argument("--phone", default="5500000000000", help="Phone to store the chat under")

    reactivate = commands.add_parser("reactivate", help="Run one reactivation phase")
    reactivate.add_argument("action", choices=["run", "analyze", "send", "stats"])

    summarize = commands.add_parser("summarize", help="Generate missing conversation summaries")
    summarize.add_argument("--limit", type=int, default=10)
    summarize.add_argument("--delay", type=float, default=1.0, help="Seconds between model calls")

    args = parser.parse_args()
    _configure_logging(debug=args.debug)

    components = build_components()
    try:
        if args.command == "chat":
            _chat(components, args.phone)
        elif args.command == "summarize":
            result = components.summaries.generate_missing(args.limit, args.delay)
            print(json.dumps(asdict(result), ensure_ascii=False, indent=2))
        else:
            _reactivate(components, args.action)
    finally:
        components.close()
        metrics.flush()


if __name__ == "__main__":
    main()
