#!/usr/bin/env python3
"""
Per-date lottery export.

For every event date the rank buckets are concatenated rank 1 first (the
shuffled order inside each rank is kept) and written as one CSV named after
the date's zero-padded month/day, e.g. "10/5(土) 13:00" -> 1005.csv.

A date without a month/day token still gets a file; its name falls back to
empty components, which pad to "0000.csv".
"""

from __future__ import annotations
import csv, io, re, sys
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

DEFAULT_DATE_PATTERN = r"(\d+)/(\d+)"


def output_stem(date: str, pattern: str = DEFAULT_DATE_PATTERN) -> str:
    m = re.search(pattern, date)
    month = m.group(1) if m else ""
    day = m.group(2) if m else ""
    return f"{month.zfill(2)}{day.zfill(2)}"


def flatten_date(buckets: Mapping[int, List[Dict[str, str]]]) -> List[Dict[str, str]]:
    users: List[Dict[str, str]] = []
    for rank in sorted(buckets):
        users.extend(buckets[rank])
    return users


def serialize_rows(rows: Sequence[Dict[str, str]], fieldnames: Sequence[str]) -> str:
    buf = io.StringIO()
    w = csv.DictWriter(buf, fieldnames=list(fieldnames), lineterminator="\n", extrasaction="ignore")
    w.writeheader()
    for r in rows:
        w.writerow(r)
    return buf.getvalue()


def render_tables(result: Mapping[str, Mapping[int, List[Dict[str, str]]]], fieldnames: Sequence[str]) -> Dict[str, str]:
    """Return ``{date: csv text}`` for every date of ``result``."""
    return {date: serialize_rows(flatten_date(buckets), fieldnames) for date, buckets in result.items()}


def write_tables(
    tables: Mapping[str, str],
    out_dir: Path,
    pattern: str = DEFAULT_DATE_PATTERN,
    suffix: str = ".csv",
) -> Tuple[List[Path], List[Tuple[str, OSError]]]:
    """Write one file per date. A failed write does not stop the others."""
    written: List[Path] = []
    failures: List[Tuple[str, OSError]] = []
    claimed: Dict[Path, str] = {}
    for date, text in tables.items():
        path = out_dir / f"{output_stem(date, pattern)}{suffix}"
        if path in claimed:
            print(f"[warn] '{date}' and '{claimed[path]}' both map to {path.name}; keeping '{date}'", file=sys.stderr)
        claimed[path] = date
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            failures.append((date, exc))
            continue
        if path not in written:
            written.append(path)
    return written, failures


def plot_bucket_sizes(result: Mapping[str, Mapping[int, List[Dict[str, str]]]], path: Path) -> Path:
    """Stacked bar chart: registrants per date, layered by rank."""
    dates = list(result)
    ranks = sorted({rank for buckets in result.values() for rank in buckets})
    plt.figure(figsize=(max(6, len(dates) * 1.2), 5))
    bottom = [0] * len(dates)
    for rank in ranks:
        vals = [len(result[d].get(rank, [])) for d in dates]
        if not any(vals):
            continue
        plt.bar(dates, vals, bottom=bottom, label=f"Rank {rank}")
        bottom = [b + v for b, v in zip(bottom, vals)]
    plt.xticks(rotation=30, ha="right")
    plt.ylabel("Registrants")
    plt.title("Registrants per date by preference rank")
    if any(bottom):
        plt.legend()
    plt.tight_layout()
    path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(path, dpi=150)
    plt.close("all")
    return path
