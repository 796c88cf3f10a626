#!/usr/bin/env python3
"""
Per-date admission lottery for event registrations.

Pipeline:
  1. Read the form export (registration_reader.iter_rows).
  2. Single pass: drop cancelled rows, keep the LAST row per key (email),
     and collect every date token any kept row ever listed.
  3. Second pass over the surviving rows: each registrant goes into bucket
     (date, rank) for every date they listed, where rank is that date's
     1-based position in THEIR OWN list (empties/ignored tokens skipped,
     repeated dates collapsed to the first occurrence).
  4. Fisher–Yates shuffle inside every (date, rank) bucket.
  5. One CSV per date, rank 1 first (export_lottery_csvs).

COLUMN LAYOUTS:
- email: [anything, email, <add extra columns>, pref1, pref2, ...]
  -> records are (email, addData=column 1+add).
- name:  [anything, email, name, <add extra columns>, pref1, ...]
  -> records are (email, name[, addData=column 2+add when add > 0]).
"""

from __future__ import annotations
import argparse, copy, csv, json, random, re, sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import export_lottery_csvs as exporter
from registration_reader import ParseError, fetch_responses, iter_rows, responses_url

# ---------------------------- CONFIG ---------------------------------

CANCEL_STRING = "これをチェック状態にすると、入場登録をキャンセルしたとみなされます"
NOT_APPLICABLE_STRING = "該当なし"

DEFAULT_CONFIG = {
    "INPUT": "data.csv",
    "ENCODING": "utf-8-sig",
    "INCLUDE_FIRST_ROW": False,     # True when the export has no header row
    "RELAX_COLUMN_COUNT": False,

    "LAYOUT": "email",
    "EXTRA_COLUMNS": 0,             # note IDs etc. inserted before the preferences
    "KEY_COLUMN": 1,

    # Any field containing CANCEL_MARKER drops the whole row.
    "CANCEL_MARKER": CANCEL_STRING,
    # A preference containing any of these is treated as absent.
    "IGNORE_MARKERS": [CANCEL_STRING, NOT_APPLICABLE_STRING],
    # When True a cancelling row also withdraws the key's earlier registration.
    "CANCEL_REMOVES_EARLIER": False,

    "OUTPUT": {
        "DIR": ".",
        "SUFFIX": ".csv",
        "DATE_PATTERN": r"(\d+)/(\d+)",
    },
}

# field name, column, shifted by EXTRA_COLUMNS
LAYOUTS: Dict[str, dict] = {
    "email": {
        "PREFERENCE_BASE": 2,
        "FIELDS": [("email", 1, False), ("addData", 1, True)],
        "SHIFTED_NEEDS_EXTRA": False,
    },
    "name": {
        "PREFERENCE_BASE": 3,
        "FIELDS": [("email", 1, False), ("name", 2, False), ("addData", 2, True)],
        "SHIFTED_NEEDS_EXTRA": True,
    },
}

Registrant = Dict[str, str]
RecordProjection = Callable[[Sequence[str]], Registrant]
# date -> rank -> registrants; every (date, rank) exists once init_result ran
Result = Dict[str, Dict[int, List[Registrant]]]


def deep_update(dst: dict, src: dict) -> dict:
    """Recursively merge ``src`` into ``dst`` (in-place)."""

    for key, value in (src or {}).items():
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            deep_update(dst[key], value)
        else:
            dst[key] = copy.deepcopy(value)
    return dst


def column(row: Sequence[str], idx: int) -> str:
    return row[idx] if 0 <= idx < len(row) else ""


@dataclass(frozen=True)
class LotteryConfig:
    input_path: Path
    encoding: str
    include_first_row: bool
    relax_column_count: bool
    layout: str
    extra_columns: int
    key_column: int
    cancel_marker: str
    ignore_markers: Tuple[str, ...]
    cancel_removes_earlier: bool
    out_dir: Path
    out_suffix: str
    date_pattern: str

    @property
    def preference_start(self) -> int:
        return LAYOUTS[self.layout]["PREFERENCE_BASE"] + self.extra_columns

    def record_columns(self) -> List[Tuple[str, int]]:
        spec = LAYOUTS[self.layout]
        cols: List[Tuple[str, int]] = []
        for name, idx, shifted in spec["FIELDS"]:
            if shifted:
                if spec["SHIFTED_NEEDS_EXTRA"] and self.extra_columns == 0:
                    continue
                idx += self.extra_columns
            cols.append((name, idx))
        return cols

    @property
    def record_fields(self) -> List[str]:
        return [name for name, _ in self.record_columns()]

    def projection(self) -> RecordProjection:
        cols = self.record_columns()

        def project(row: Sequence[str]) -> Registrant:
            return {name: column(row, idx) for name, idx in cols}

        return project


def build_config(overrides: dict | None = None) -> LotteryConfig:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        deep_update(cfg, overrides)

    layout = cfg["LAYOUT"]
    if layout not in LAYOUTS:
        raise ValueError(f"Unknown layout '{layout}' (expected one of: {', '.join(sorted(LAYOUTS))})")
    extra = int(cfg["EXTRA_COLUMNS"])
    if extra < 0:
        raise ValueError("EXTRA_COLUMNS must be >= 0")

    out = cfg["OUTPUT"]
    try:
        groups = re.compile(out["DATE_PATTERN"]).groups
    except re.error as exc:
        raise ValueError(f"OUTPUT.DATE_PATTERN is not a valid regex: {exc}") from exc
    if groups < 2:
        raise ValueError("OUTPUT.DATE_PATTERN needs two groups (month, day)")
    return LotteryConfig(
        input_path=Path(cfg["INPUT"]),
        encoding=cfg["ENCODING"],
        include_first_row=bool(cfg["INCLUDE_FIRST_ROW"]),
        relax_column_count=bool(cfg["RELAX_COLUMN_COUNT"]),
        layout=layout,
        extra_columns=extra,
        key_column=int(cfg["KEY_COLUMN"]),
        cancel_marker=cfg["CANCEL_MARKER"],
        ignore_markers=tuple(cfg["IGNORE_MARKERS"]),
        cancel_removes_earlier=bool(cfg["CANCEL_REMOVES_EARLIER"]),
        out_dir=Path(out["DIR"]),
        out_suffix=out["SUFFIX"],
        date_pattern=out["DATE_PATTERN"],
    )

# ---------------------------- Decision log ---------------------------

DECISION_FIELDS = ["Step", "Phase", "Key", "Status", "Note"]

class DecisionLogger:
    def __init__(self):
        self.step = 0
        self.rows: List[dict] = []
    def log(self, phase: str, key: str, status: str, note: str = ""):
        self.step += 1
        self.rows.append({"Step": self.step, "Phase": phase, "Key": key, "Status": status, "Note": note})
    def write_csv(self, out: Path):
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=DECISION_FIELDS)
            w.writeheader()
            for r in self.rows: w.writerow({k: r.get(k, "") for k in DECISION_FIELDS})

# ------------------------- Preferences --------------------------------

def is_cancelled(row: Sequence[str], cfg: LotteryConfig) -> bool:
    return bool(cfg.cancel_marker) and any(cfg.cancel_marker in field for field in row)


def is_valid_date(token: str, cfg: LotteryConfig) -> bool:
    # whitespace-only cells count as empty, not as a date named " "
    if not token.strip():
        return False
    return not any(marker in token for marker in cfg.ignore_markers if marker)


def preference_list(row: Sequence[str], cfg: LotteryConfig) -> List[str]:
    """Ordered, filtered preferences of one row; repeats collapse to the first occurrence."""
    seen: Dict[str, None] = {}
    for token in row[cfg.preference_start:]:
        if is_valid_date(token, cfg) and token not in seen:
            seen[token] = None
    return list(seen)


def collect_registrations(
    rows: Iterable[Sequence[str]],
    cfg: LotteryConfig,
    logger: Optional[DecisionLogger] = None,
) -> Tuple[Dict[str, List[str]], List[str]]:
    """Consume ``rows`` once and return (dedup table, date universe).

    The universe holds every date listed by any non-cancelled row, including
    rows later overwritten by a newer row for the same key.
    """
    table: Dict[str, List[str]] = {}
    universe: Dict[str, None] = {}
    for row in rows:
        key = column(row, cfg.key_column)
        if is_cancelled(row, cfg):
            if cfg.cancel_removes_earlier and key in table:
                del table[key]
                if logger: logger.log("dedup", key, "Cancelled", "earlier registration withdrawn")
            elif logger:
                logger.log("dedup", key, "Cancelled")
            continue
        if logger:
            logger.log("dedup", key, "Overwritten" if key in table else "Kept")
        table[key] = list(row)
        for date in preference_list(row, cfg):
            universe.setdefault(date, None)
    return table, list(universe)

# ------------------------- Buckets ------------------------------------

def init_result(universe: Sequence[str]) -> Result:
    size = len(universe)
    return {date: {rank: [] for rank in range(1, size + 1)} for date in universe}


def assign_priorities(
    table: Dict[str, List[str]],
    universe: Sequence[str],
    cfg: LotteryConfig,
    project: Optional[RecordProjection] = None,
    logger: Optional[DecisionLogger] = None,
) -> Result:
    project = project or cfg.projection()
    result = init_result(universe)
    for key, row in table.items():
        prefs = preference_list(row, cfg)
        if not prefs:
            if logger: logger.log("assign", key, "No dates")
            continue
        record = project(row)
        for rank, date in enumerate(prefs, start=1):
            if date in result:
                result[date][rank].append(dict(record))
        if logger:
            logger.log("assign", key, "Assigned", " | ".join(f"{d}#{r}" for r, d in enumerate(prefs, start=1)))
    return result

# ------------------------- Shuffle ------------------------------------

def shuffle_in_place(items: list, rng: random.Random) -> None:
    """Fisher–Yates: every permutation equally likely."""
    for i in range(len(items), 1, -1):
        j = rng.randrange(i)
        items[j], items[i - 1] = items[i - 1], items[j]


def shuffle_buckets(result: Result, rng: random.Random) -> Result:
    for buckets in result.values():
        for users in buckets.values():
            shuffle_in_place(users, rng)
    return result


def run_lottery(
    cfg: LotteryConfig,
    *,
    rng: Optional[random.Random] = None,
    project: Optional[RecordProjection] = None,
    logger: Optional[DecisionLogger] = None,
) -> Result:
    rows = iter_rows(
        cfg.input_path,
        include_first_row=cfg.include_first_row,
        encoding=cfg.encoding,
        relax_column_count=cfg.relax_column_count,
    )
    table, universe = collect_registrations(rows, cfg, logger)
    result = assign_priorities(table, universe, cfg, project, logger)
    return shuffle_buckets(result, rng or random.Random())

# -------------------- CLI --------------------

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Shuffle registrants per event date by preference rank")
    ap.add_argument("-f", "--fileName", dest="file_name", default=None, type=Path,
                    help=f"Registration CSV (default: {DEFAULT_CONFIG['INPUT']})")
    ap.add_argument("-a", "--add", type=int, default=None,
                    help="Number of extra data columns (note IDs etc.) before the preference columns")
    ap.add_argument("--header", action="store_true", default=None,
                    help="Treat the first row as data")
    ap.add_argument("--layout", choices=sorted(LAYOUTS), default=None)
    ap.add_argument("--out-dir", type=Path, default=None, help="Directory for the per-date CSVs")
    ap.add_argument("--config", type=Path, help="Optional JSON file with CONFIG overrides")
    ap.add_argument("--seed", type=int, default=None, help="Seed the shuffle for a reproducible draw")
    ap.add_argument("--decision-log", default="-", help="Decision log CSV (set to '-' to skip)")
    ap.add_argument("--plot", type=Path, default=None, help="Optional PNG chart of bucket sizes")
    ap.add_argument("--doc-id", help="Google Sheets document id to download into --fileName first")
    ap.add_argument("--gid", default="0", help="Sheet gid used with --doc-id")
    ap.add_argument("--refresh", action="store_true", help="Re-download even if --fileName exists")
    return ap.parse_args(argv)


def overrides_from_args(args: argparse.Namespace) -> dict:
    overrides: dict = {}
    if args.config:
        overrides = json.loads(args.config.read_text(encoding="utf-8"))
    if args.file_name is not None:
        overrides["INPUT"] = str(args.file_name)
    if args.add is not None:
        overrides["EXTRA_COLUMNS"] = args.add
    if args.header:
        overrides["INCLUDE_FIRST_ROW"] = True
    if args.layout is not None:
        overrides["LAYOUT"] = args.layout
    if args.out_dir is not None:
        overrides.setdefault("OUTPUT", {})["DIR"] = str(args.out_dir)
    return overrides


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logger = DecisionLogger()
    try:
        cfg = build_config(overrides_from_args(args))
        if args.doc_id:
            if fetch_responses(responses_url(args.doc_id, args.gid), cfg.input_path, refresh=args.refresh):
                print(f"[info] Downloaded responses → {cfg.input_path}", file=sys.stderr)
        result = run_lottery(cfg, rng=random.Random(args.seed), logger=logger)
    except (ParseError, OSError, ValueError) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    tables = exporter.render_tables(result, cfg.record_fields)
    written, failures = exporter.write_tables(tables, cfg.out_dir, cfg.date_pattern, cfg.out_suffix)
    for path in written:
        print(f"Wrote: {path}")
    print(f"[info] {len(result)} dates, {sum(len(u) for b in result.values() for u in b.values())} placements",
          file=sys.stderr)

    if args.decision_log != "-":
        try:
            logger.write_csv(Path(args.decision_log))
        except OSError as e:
            failures.append(("decision log", e))
        else:
            print(f"Wrote: {args.decision_log}")

    if args.plot:
        try:
            exporter.plot_bucket_sizes(result, args.plot)
            print(f"Wrote plot → {args.plot}", file=sys.stderr)
        except Exception as e:
            print(f"[warn] Could not produce plot: {e}", file=sys.stderr)

    if failures:
        for what, err in failures:
            print(f"Failed to write {what}: {err}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
