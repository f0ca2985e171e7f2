#!/usr/bin/env python3
"""Inspect or cancel the persisted export session.

Usage (from project root):
  python session_ctl.py status            # one JSON line describing the session
  python session_ctl.py dump --output x.csv   # write the orders collected so far
  python session_ctl.py cancel            # clear the session; a running spider stops at its next check

The state DB defaults to $STATE_DB (data/state.db); override with --db.
"""
from __future__ import annotations
import argparse, os, sys

import orjson

from order_scraper.db import DB_PATH, StateStore
from order_scraper.finalize import flatten_rows, sort_orders, to_csv
from order_scraper.session import CollectorSession


def cmd_status(session: CollectorSession, args) -> int:
    sys.stdout.write(orjson.dumps(session.status(), option=orjson.OPT_SORT_KEYS).decode() + "\n")
    return 0


def cmd_dump(session: CollectorSession, args) -> int:
    orders = sort_orders(session.orders())
    if not orders:
        print('[DUMP] Session holds no orders.', file=sys.stderr)
        return 1
    text = to_csv(flatten_rows(orders)) + "\n"
    if args.output in (None, '-'):
        sys.stdout.write(text)
    else:
        out_dir = os.path.dirname(args.output)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        with open(args.output, 'w', encoding='utf-8', newline='') as f:
            f.write(text)
        print(f"[DUMP] Wrote {len(orders)} orders -> {args.output}")
    return 0


def cmd_cancel(session: CollectorSession, args) -> int:
    if not session.resume():
        print('[CANCEL] No active session.')
        return 0
    session.cancel(reason="session_ctl")
    print('[CANCEL] Session cleared.')
    return 0


COMMANDS = {
    'status': cmd_status,
    'dump': cmd_dump,
    'cancel': cmd_cancel,
}


def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument('--db', default=str(DB_PATH), help='SQLite state DB path.')
    sub = ap.add_subparsers(dest='command', required=True)
    sub.add_parser('status', help='Print the session status as JSON.')
    dump = sub.add_parser('dump', help='Write the orders collected so far as CSV.')
    dump.add_argument('--output', default='-', help="CSV path ('-' for stdout).")
    sub.add_parser('cancel', help='Cancel and clear the active session.')
    args = ap.parse_args(argv)

    session = CollectorSession(StateStore(args.db), progress=None)
    return COMMANDS[args.command](session, args)


if __name__ == '__main__':
    raise SystemExit(main())
