#!/usr/bin/env python3
"""
Send Now — run one dispatch outside the schedule.

Usage:
    python scripts/send_now.py                      # today's quote to everyone
    python scripts/send_now.py --dry-run            # show selection + recipients, send nothing
    python scripts/send_now.py --date 2026-01-01    # the quote for another day
    python scripts/send_now.py --to +919876543210   # a single subscriber
    python scripts/send_now.py --list               # print the subscriber list
"""
import argparse
import asyncio
import os
import sys
from datetime import date

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(args) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from utils.logging import configure_logging
    settings = load_settings(args.config)
    configure_logging(settings.logging)

    from channels.whatsapp_adapter import WhatsAppAdapter
    from content.selector import ContentCatalog, NoContentAvailable, today_in
    from core.orchestrator import Orchestrator
    from database.store_factory import create_subscriber_store

    store = create_subscriber_store(settings.data)
    catalog = ContentCatalog(settings.data.quotes_file)
    catalog.reload()
    day = args.date or today_in(settings.schedule.timezone)

    if args.list:
        for s in await store.list_active():
            print(f"{s.identity}\t{s.display_name}")
        return 0

    if args.dry_run:
        try:
            index, item = catalog.select(day)
        except NoContentAvailable:
            print("Content catalog is empty, nothing to send.")
            return 1
        print(f"{day.isoformat()}  quote #{index}: {item.text}")
        print(f"image: {item.image_ref}")
        for s in await store.list_active():
            print(f"  -> {s.identity}\t{s.display_name}")
        return 0

    client = WhatsAppAdapter(settings.whatsapp)
    orchestrator = Orchestrator(settings, client, store, catalog)
    try:
        await client.initialize()
        while not orchestrator.session.is_ready:
            event = await client.next_event(timeout=args.wait_ready)
            if event is None:
                print("Delivery client did not become ready.", file=sys.stderr)
                return 2
            await orchestrator.handle_event(event)
            if orchestrator.session.auth_failure:
                print(f"Authentication failed: {orchestrator.session.auth_failure}", file=sys.stderr)
                return 2

        result = await orchestrator.run_daily(day=day, only=args.to)
        if result is None:
            print("Nothing to do.")
            return 1
        summary = result.summary()
        print(f"sent {summary['sent']}/{summary['recipients']}, failed {summary['failed']}")
        for outcome in result.outcomes.values():
            if not outcome.ok:
                print(f"  x {outcome.identity}: {outcome.reason}")
        return 0 if summary["failed"] == 0 else 3
    finally:
        await client.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send the daily quote now")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--date", type=date.fromisoformat, default=None,
                        help="Select the quote for YYYY-MM-DD")
    parser.add_argument("--to", default=None, help="Only send to this identity")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be sent")
    parser.add_argument("--list", action="store_true", help="List subscribers and exit")
    parser.add_argument("--wait-ready", type=float, default=30.0,
                        help="Seconds to wait for the session to become ready")
    return parser


def main():
    args = build_parser().parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
