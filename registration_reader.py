#!/usr/bin/env python3
"""Row source for the registration lottery.

Reads the registration-form CSV export one record at a time. The export can be
fetched first from Google Sheets (the form's response sheet) when a document id
is supplied on the command line.
"""

from __future__ import annotations
import csv, ssl, urllib.error, urllib.parse, urllib.request
from pathlib import Path
from typing import Iterator, List

import certifi


class ParseError(ValueError):
    """Malformed delimited input. Aborts the run before anything is written."""

    def __init__(self, path: Path, line: int, message: str):
        super().__init__(f"{path}:{line}: {message}")
        self.path = path
        self.line = line

# ------------------------ Form responses ------------------------------

SHEETS_EXPORT = "https://docs.google.com/spreadsheets/d/{doc_id}/export"


class FetchError(OSError):
    """The response sheet could not be downloaded."""


def responses_url(doc_id: str, gid: str = "0") -> str:
    """CSV export URL of one tab of the form's response spreadsheet."""
    query = urllib.parse.urlencode({"format": "csv", "gid": gid})
    return SHEETS_EXPORT.format(doc_id=urllib.parse.quote(doc_id, safe="")) + "?" + query


def fetch_responses(url: str, dest: Path, *, refresh: bool = False, timeout: float = 30.0) -> bool:
    """Download the response export into ``dest``.

    Returns False when ``dest`` already exists and ``refresh`` is off. The body
    is staged in a sibling ``.part`` file and moved into place once complete.
    A sheet that is not shared publicly answers with a sign-in page instead of
    CSV; that is reported as a FetchError.
    """
    if dest.exists() and not refresh:
        return False
    ctx = ssl.create_default_context(cafile=certifi.where())
    req = urllib.request.Request(url, headers={"User-Agent": "PriorityLottery/1.0", "Accept": "text/csv"})
    try:
        with urllib.request.urlopen(req, context=ctx, timeout=timeout) as resp:
            status = getattr(resp, "status", 200)
            if status != 200:
                raise FetchError(f"{url}: HTTP {status}")
            body = resp.read()
    except urllib.error.URLError as exc:
        raise FetchError(f"{url}: {exc.reason}") from exc
    if body.lstrip()[:15].lower().startswith((b"<!doctype html", b"<html")):
        raise FetchError(f"{url}: got an HTML page, is the sheet shared?")

    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")
    part.write_bytes(body)
    part.replace(dest)
    return True


# ------------------------- Row stream ---------------------------------

def iter_rows(
    path: Path,
    *,
    include_first_row: bool = False,
    encoding: str = "utf-8-sig",
    relax_column_count: bool = False,
) -> Iterator[List[str]]:
    """Yield each record of ``path`` as a list of strings.

    The first record is the form header and is skipped unless
    ``include_first_row`` is set. Field counts must match the first record
    unless ``relax_column_count`` is set.
    """
    expected = None
    with path.open("r", encoding=encoding, newline="") as handle:
        rdr = csv.reader(handle, strict=True)
        while True:
            try:
                row = next(rdr)
            except StopIteration:
                return
            except csv.Error as exc:
                raise ParseError(path, rdr.line_num, str(exc)) from exc
            except UnicodeDecodeError as exc:
                raise ParseError(path, rdr.line_num + 1, f"cannot decode input as {encoding}: {exc.reason}") from exc

            if not row:  # blank line
                continue
            if expected is None:
                expected = len(row)
                if not include_first_row:
                    continue
            elif not relax_column_count and len(row) != expected:
                raise ParseError(
                    path,
                    rdr.line_num,
                    f"invalid record length: expected {expected} fields, got {len(row)}",
                )
            yield list(row)
