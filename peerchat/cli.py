# cli.py
"""
Command line front end.

Usage:
  peerchat init-db                  # dry-run (shows what *would* happen)
  peerchat init-db --force          # actually drop & recreate all tables
  peerchat listen                   # run the relay, print inbound messages
  peerchat send 10.0.0.7 lobby "hi" --lat 40.7 --lon -74.0
  peerchat history lobby
  peerchat peers
"""

import argparse
import logging
import sys
import time
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone

from peerchat import db, settings
from peerchat.errors import RelayError
from peerchat.relay import ChatRelay
from peerchat.sender import SendResult
from peerchat.store import ChatStore

logger = logging.getLogger("peerchat")

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _fmt_time(ts) -> str:
    if ts is None:
        return "never"
    if ts.tzinfo is not None:
        ts = ts.astimezone()
    return ts.strftime(TIME_FORMAT)


def _fmt_coord(lat, lon) -> str:
    if lat is None or lon is None:
        return "?"
    return f"{lat:.5f},{lon:.5f}"


def format_message(m) -> str:
    return f"{_fmt_time(m.timestamp)}  [{m.chatroom}] {m.sender}: {m.message_text}"


def cmd_init_db(args, store) -> int:
    print(f"About to reset {store.dialect} tables:")
    for t in db.TABLES_IN_ORDER:
        print("  -", t)

    if not args.force:
        print("\nDRY-RUN: No changes made. Re-run with --force to apply.")
        for sql in db.drop_tables(None, store.dialect, dry_run=True):
            print("DRY-RUN:", sql)
        for sql in db.create_schema(None, store.dialect, dry_run=True):
            print("DRY-RUN:", sql)
        return 0

    store.open()
    try:
        store.reset()
    finally:
        store.close()
    print("Tables dropped & recreated.")
    return 0


def cmd_listen(args, store) -> int:
    with store:
        relay = ChatRelay(store, port=args.port, on_message=lambda m: print(format_message(m), flush=True))
        with relay:
            print(f"Listening on UDP port {relay.port} as {settings.get_sender_name()} (Ctrl-C to quit)")
            try:
                while relay.receiver_healthy:
                    time.sleep(1.0)
            except KeyboardInterrupt:
                print()
            if not relay.receiver_healthy:
                print("Receive loop failed; see log.", file=sys.stderr)
                return 1
    return 0


def cmd_send(args, store) -> int:
    timestamp = datetime.now(timezone.utc)
    with store:
        with ChatRelay(store, port=args.port) as relay:
            future = relay.send(args.destination, args.room, args.text, timestamp, args.lat, args.lon)
            try:
                result = future.result(timeout=args.wait)
            except FutureTimeout:
                result = SendResult.FAILED
    if result is SendResult.DELIVERED:
        print(f"Sent to {args.destination} in [{args.room}]")
        return 0
    print(f"Could not send to {args.destination}", file=sys.stderr)
    return 1


def cmd_history(args, store) -> int:
    with store:
        msgs = store.fetch_all_messages(args.room, collapse_duplicates=args.collapse)
    if not msgs:
        print(f"No messages found in [{args.room}].")
        return 0
    print(f"\n=== [{args.room}] ===")
    for m in msgs:
        print(format_message(m))
    return 0


def cmd_peers(args, store) -> int:
    with store:
        peers = store.fetch_all_peers()
    if not peers:
        print("No peers yet.")
    for p in peers:
        print(f"{p.name:<20} {_fmt_coord(p.latitude, p.longitude):<24} last seen {_fmt_time(p.last_seen)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="peerchat", description="Peer-to-peer UDP chat relay.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Reset and recreate the chat tables.")
    p.add_argument("--force", action="store_true", help="Actually drop & recreate tables (no --force = dry run).")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("listen", help="Run the relay and print inbound messages.")
    p.add_argument("--port", type=int, default=None, help=f"UDP port (default CHAT_PORT={settings.CHAT_PORT}).")
    p.set_defaults(func=cmd_listen)

    p = sub.add_parser("send", help="Send one message and wait for the outcome.")
    p.add_argument("destination", help="host or host:port")
    p.add_argument("room")
    p.add_argument("text")
    p.add_argument("--lat", type=float, default=None)
    p.add_argument("--lon", type=float, default=None)
    p.add_argument("--port", type=int, default=0, help="Local UDP port to send from (default: any free port).")
    p.add_argument("--wait", type=float, default=30.0, help="Seconds to wait for the completion signal.")
    p.set_defaults(func=cmd_send)

    p = sub.add_parser("history", help="Print a chatroom's messages.")
    p.add_argument("room")
    p.add_argument("--collapse", action="store_true", help="Hide retransmitted duplicates.")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("peers", help="Print known peers.")
    p.set_defaults(func=cmd_peers)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    try:
        store = ChatStore.from_settings()
    except ValueError as e:
        logger.error("Bad configuration: %s", e)
        return 1
    try:
        return args.func(args, store)
    except RelayError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
