"""Fixtures and helpers for lottery tests."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List, Sequence

FORM_HEADER: Sequence[str] = (
    "Timestamp",
    "Email Address",
    "First choice",
    "Second choice",
    "Third choice",
)

CANCEL = "これをチェック状態にすると、入場登録をキャンセルしたとみなされます"
NOT_APPLICABLE = "該当なし"


def registration_row(
    email: str,
    prefs: Iterable[str],
    *,
    stamp: str = "2024/09/01 10:00:00",
    name: str | None = None,
    extra: Iterable[str] = (),
    width: int | None = None,
) -> List[str]:
    """Build one form response row; ``width`` pads it with empty fields."""

    row = [stamp, email]
    if name is not None:
        row.append(name)
    row.extend(extra)
    row.extend(prefs)
    if width is not None:
        row.extend("" for _ in range(width - len(row)))
    return row


def write_registrations(path: Path, rows: Iterable[Sequence[str]], header: Sequence[str] | None = FORM_HEADER) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        if header is not None:
            writer.writerow(list(header))
        for row in rows:
            writer.writerow(list(row))
    return path


def read_output(path: Path) -> List[dict]:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return list(csv.DictReader(handle))


def emails(rows: Iterable[dict]) -> List[str]:
    return [r["email"] for r in rows]
