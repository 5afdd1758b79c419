from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

from dhims_upload.cli import main as cli_main
from dhims_upload.cli.__main__ import _load_env_file, _parse_args


def test_parse_args_defaults():
    args = _parse_args([])
    assert args.config == Path("config/upload.yml")
    assert args.input is None
    assert args.sheet is None
    assert not args.dry_run and not args.strict and not args.debug


def test_parse_args_flags():
    args = _parse_args(["--input", "ward.xlsx", "--sheet", "June", "--dry-run", "--strict", "--debug"])
    assert args.input == Path("ward.xlsx")
    assert args.sheet == "June"
    assert args.dry_run and args.strict and args.debug


def test_load_env_file_missing_is_noop(temp_workdir: Path):
    _load_env_file(temp_workdir / ".env")


def test_load_env_file_overrides_environment(temp_workdir: Path, monkeypatch):
    monkeypatch.setenv("DHIMS_SESSION_ID", "old")
    env = temp_workdir / ".env"
    env.write_text("DHIMS_SESSION_ID=new\n", encoding="utf-8")
    _load_env_file(env)
    assert os.environ["DHIMS_SESSION_ID"] == "new"


def test_cli_debug_mode(write_config: Path, make_raw, write_workbook, capsys):
    """--debug 指定時に DEBUG ログが出力されることを検証。"""
    write_workbook([make_raw().values])
    code = cli_main(["--input", "data/ward.xlsx", "--dry-run", "--debug"])
    out = capsys.readouterr().out
    assert code == 0
    assert "DEBUG debug mode enabled" in out
    assert "INFO dry-run: payload preview written to" in out


def test_cli_uses_source_file_from_config(write_config: Path, sample_config_yaml: str, make_raw, write_workbook, capsys):
    write_config.write_text(sample_config_yaml + "source:\n  file: data/ward.xlsx\n  sheet: Ward\n", encoding="utf-8")
    write_workbook([make_raw().values], sheet="Ward")
    assert cli_main(["--dry-run"]) == 0
    assert "read 1 records from ward.xlsx" in capsys.readouterr().out


def test_cli_warns_without_credentials(write_config: Path, make_raw, write_workbook, fake_session, capsys):
    write_workbook([make_raw().values])
    with patch("dhims_upload.services.api_client.requests.Session", return_value=fake_session()):
        assert cli_main(["--input", "data/ward.xlsx"]) == 0
    assert "WARN no credentials configured" in capsys.readouterr().out
