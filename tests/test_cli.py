from __future__ import annotations

import argparse
from pathlib import Path

import pytest

from rfa_archive import cli
from rfa_archive.errors import CheckpointWriteError
from rfa_archive.models import Site


def test_parse_month() -> None:
    assert cli._parse_month("2024-03") == (2024, 3)
    for bad in ("2024", "2024-13", "march"):
        with pytest.raises(argparse.ArgumentTypeError):
            cli._parse_month(bad)


def test_parse_sites() -> None:
    assert cli._parse_sites(None) == tuple(Site)
    assert cli._parse_sites(["lao,rfa-khmer", "lao"]) == (Site.LAO, Site.KHMER)
    with pytest.raises(ValueError):
        cli._parse_sites(["atlantis"])


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> dict:
    seen: dict = {}

    def fake_run_archive(config, *, session=None, stop_event=None, adapters=None):
        seen["config"] = config
        stats = {k: 0 for k in ("fetched", "skipped_duplicate", "not_found",
                                "parse_failed", "error")}
        stats["fetched"] = 7
        return {s.value: {"stats": stats, "stopped": False} for s in config.sites}

    monkeypatch.setattr(cli, "run_archive", fake_run_archive)
    monkeypatch.setattr(cli.signal, "signal", lambda *a: None)
    return seen


def test_main_builds_config(captured: dict, tmp_path: Path, capsys) -> None:
    code = cli.main(
        [
            "-w", "korean",
            "-o", str(tmp_path),
            "--proxy", "http://127.0.0.1:8089",
            "--concurrency", "2",
            "--since", "2020-05",
            "--no-resume",
            "--no-progress",
            "--checkpoint-interval", "15",
        ]
    )
    assert code == 0
    config = captured["config"]
    assert config.sites == (Site.KOREAN,)
    assert config.proxy == "http://127.0.0.1:8089"
    assert config.start_month == (2020, 5)
    assert config.checkpoint_interval_s == 15.0
    assert config.limits_for(Site.KOREAN).concurrency == 2
    assert config.resume is False
    assert config.retry_failed is True
    assert "korean: fetched=7" in capsys.readouterr().out


def test_unknown_site_exits_2(captured: dict, tmp_path: Path) -> None:
    assert cli.main(["-w", "atlantis", "-o", str(tmp_path)]) == 2
    assert "config" not in captured


def test_checkpoint_failure_exits_3(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def failing(config, **kwargs):
        raise CheckpointWriteError("disk full")

    monkeypatch.setattr(cli, "run_archive", failing)
    monkeypatch.setattr(cli.signal, "signal", lambda *a: None)
    assert cli.main(["-w", "lao", "-o", str(tmp_path)]) == 3
