#!/usr/bin/env python3
"""Merge several order export JSONL snapshots into one deduplicated CSV.

Deduplication key: order_id. When the same order appears in more than one
file the copy from the earliest input wins (files are read in the order given).
Rows are regrouped into orders, sorted newest first and written in the same
column layout as a live export.

Usage (from project root):
  python merge_exports.py \
      --inputs backups/orders-*.jsonl data/orders-2026-10-19.jsonl \
      --output backups/orders_merged.csv

With no args it auto-discovers data/orders-*.jsonl and backups/orders-*.jsonl.
"""
from __future__ import annotations
import argparse, glob, os, sys, datetime
from typing import List

import orjson

from order_scraper.finalize import CSV_HEADERS, csv_writer, flatten_rows, merge_orders, orders_from_rows, row_values, sort_orders

DEFAULT_GLOB_PATTERNS = [
    'data/orders-*.jsonl',
    'backups/orders-*.jsonl',
]


def iter_jsonl(path: str):
    try:
        with open(path, 'rb') as f:
            for i, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield orjson.loads(line)
                except orjson.JSONDecodeError as e:
                    sys.stderr.write(f"[WARN] Failed parsing line {i} in {path}: {e}\n")
    except FileNotFoundError:
        return


def _unique_path(path: str) -> str:
    """Return a path that does not exist yet by appending a timestamp (and counter if needed).

    Examples:
      backups/orders_merged.csv -> backups/orders_merged-20261019-123456.csv
    """
    dirpath = os.path.dirname(path) or '.'
    name, ext = os.path.splitext(os.path.basename(path))
    candidate = path
    if os.path.exists(candidate):
        ts = datetime.datetime.now().strftime('%Y%m%d-%H%M%S')
        candidate = os.path.join(dirpath, f"{name}-{ts}{ext}")
        i = 1
        while os.path.exists(candidate):
            candidate = os.path.join(dirpath, f"{name}-{ts}-{i}{ext}")
            i += 1
    return candidate


def discover(patterns: List[str]) -> List[str]:
    files: List[str] = []
    for pat in patterns:
        files.extend(sorted(glob.glob(pat)))
    # Deduplicate & keep stable order
    seen = set()
    ordered = []
    for p in files:
        if os.path.isfile(p) and p not in seen:
            seen.add(p)
            ordered.append(p)
    return ordered


def merge_files(paths: List[str]):
    batches = [orders_from_rows(iter_jsonl(p)) for p in paths]
    return sort_orders(merge_orders(*batches))


def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument('--inputs', nargs='*', help='Explicit input JSONL files (glob patterns allowed).')
    ap.add_argument('--output', default='backups/orders_merged.csv', help='Output CSV file path.')
    args = ap.parse_args(argv)

    files = discover(args.inputs if args.inputs else DEFAULT_GLOB_PATTERNS)
    if not files:
        print('No input files found.', file=sys.stderr)
        return 1

    print(f"[MERGE] Inputs ({len(files)}):")
    for f in files:
        print(f"  - {f}")

    orders = merge_files(files)
    rows = flatten_rows(orders)

    out_dir = os.path.dirname(args.output)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    final_out = _unique_path(args.output)
    # Exclusive create: never overwrite an earlier merge
    with open(final_out, 'x', encoding='utf-8', newline='') as out:
        writer = csv_writer(out)
        writer.writerow(CSV_HEADERS)
        for row in rows:
            writer.writerow(row_values(row))
    print(f"[MERGE] Wrote {len(orders)} unique orders ({len(rows)} items) -> {final_out}")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
