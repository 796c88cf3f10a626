from __future__ import annotations

import csv
import json
import subprocess
import sys
import urllib.error
from pathlib import Path

import pytest

import priority_lottery as lottery
import registration_reader as reader
from tests.utils import CANCEL, emails, read_output, registration_row, write_registrations

ROOT = Path(__file__).resolve().parents[1]


def _sample_rows():
    return [
        registration_row("alice@x", ["10/5(土)", "10/6(日)", ""]),
        registration_row("bob@x", ["10/6(日)", "10/5(土)", ""]),
        registration_row("carol@x", ["10/5(土)", "", ""]),
        registration_row("bob@x", ["10/6(日)", "該当なし", ""]),
        registration_row("dave@x", ["10/7(月)", CANCEL, ""]),
    ]


def test_cli_writes_one_file_per_date(tmp_path: Path) -> None:
    data = write_registrations(tmp_path / "data.csv", _sample_rows())
    out_dir = tmp_path / "out"
    log_path = tmp_path / "decision_log.csv"

    proc = subprocess.run(
        [
            sys.executable,
            str(ROOT / "priority_lottery.py"),
            "--fileName",
            str(data),
            "--out-dir",
            str(out_dir),
            "--seed",
            "7",
            "--decision-log",
            str(log_path),
        ],
        cwd=ROOT,
        capture_output=True,
        text=True,
    )
    assert proc.returncode == 0, proc.stderr

    assert sorted(p.name for p in out_dir.iterdir()) == ["1005.csv", "1006.csv"]
    d5 = emails(read_output(out_dir / "1005.csv"))
    d6 = emails(read_output(out_dir / "1006.csv"))
    assert sorted(d5[:2]) == ["alice@x", "carol@x"]
    assert len(d5) == 2  # bob's surviving row no longer lists 10/5
    assert d6 == ["bob@x", "alice@x"]

    with log_path.open(encoding="utf-8", newline="") as fh:
        decisions = {(r["Key"], r["Status"]) for r in csv.DictReader(fh) if r["Phase"] == "dedup"}
    assert ("bob@x", "Overwritten") in decisions
    assert ("dave@x", "Cancelled") in decisions


def test_header_flag_keeps_first_row(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    write_registrations(tmp_path / "data.csv", [registration_row("bob@x", ["10/6", "", ""])],
                        header=registration_row("alice@x", ["10/5", "", ""]))

    lottery.main(["--header", "--seed", "1"])

    assert emails(read_output(tmp_path / "1005.csv")) == ["alice@x"]
    assert emails(read_output(tmp_path / "1006.csv")) == ["bob@x"]


def test_parse_error_aborts_before_any_output(tmp_path: Path, capsys) -> None:
    data = tmp_path / "data.csv"
    data.write_text("Timestamp,Email,First\nt,a@x,10/5\nt,b@x\n", encoding="utf-8")
    out_dir = tmp_path / "out"

    with pytest.raises(SystemExit) as exc:
        lottery.main(["-f", str(data), "--out-dir", str(out_dir)])

    assert exc.value.code == 1
    assert "invalid record length" in capsys.readouterr().err
    assert not out_dir.exists()


def test_missing_input_exits_nonzero(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        lottery.main(["-f", str(tmp_path / "nope.csv"), "--out-dir", str(tmp_path / "out")])
    assert exc.value.code == 1
    assert not (tmp_path / "out").exists()


def test_plot_flag_writes_chart(tmp_path: Path) -> None:
    data = write_registrations(tmp_path / "data.csv", _sample_rows())
    chart = tmp_path / "buckets.png"
    lottery.main(["-f", str(data), "--out-dir", str(tmp_path / "out"), "--plot", str(chart)])
    assert chart.exists()


def test_blocked_output_still_writes_other_dates(tmp_path: Path, capsys) -> None:
    data = write_registrations(tmp_path / "data.csv", _sample_rows())
    out_dir = tmp_path / "out"
    (out_dir / "1005.csv").mkdir(parents=True)

    with pytest.raises(SystemExit) as exc:
        lottery.main(["-f", str(data), "--out-dir", str(out_dir), "--seed", "3"])

    assert exc.value.code == 1
    assert emails(read_output(out_dir / "1006.csv")) == ["bob@x", "alice@x"]
    assert "Failed to write 10/5(土)" in capsys.readouterr().err


def test_unwritable_decision_log_reported_after_outputs(tmp_path: Path, capsys) -> None:
    data = write_registrations(tmp_path / "data.csv", _sample_rows())
    out_dir = tmp_path / "out"
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("", encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        lottery.main(["-f", str(data), "--out-dir", str(out_dir), "--decision-log", str(blocker / "log.csv")])

    assert exc.value.code == 1
    assert (out_dir / "1005.csv").exists() and (out_dir / "1006.csv").exists()
    err = capsys.readouterr().err
    assert "Failed to write decision log" in err
    assert "Traceback" not in err


def test_date_pattern_without_day_group_is_rejected(tmp_path: Path, capsys) -> None:
    data = write_registrations(tmp_path / "data.csv", _sample_rows())
    conf = tmp_path / "lottery.json"
    conf.write_text(json.dumps({"OUTPUT": {"DATE_PATTERN": "(\\d+)/"}}), encoding="utf-8")
    out_dir = tmp_path / "out"

    with pytest.raises(SystemExit) as exc:
        lottery.main(["-f", str(data), "--out-dir", str(out_dir), "--config", str(conf)])

    assert exc.value.code == 1
    assert "DATE_PATTERN" in capsys.readouterr().err
    assert not out_dir.exists()


def test_failed_download_exits_before_reading(tmp_path: Path, monkeypatch, capsys) -> None:
    def refuse(req, context=None, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(reader.urllib.request, "urlopen", refuse)
    out_dir = tmp_path / "out"

    with pytest.raises(SystemExit) as exc:
        lottery.main(["-f", str(tmp_path / "data.csv"), "--out-dir", str(out_dir), "--doc-id", "DOC123"])

    assert exc.value.code == 1
    err = capsys.readouterr().err.strip().splitlines()
    assert len(err) == 1 and "connection refused" in err[0]
    assert not out_dir.exists()
