# tests/test_config.py

from __future__ import annotations

import json
from pathlib import Path

import pytest

from relay.entry.config import build_arg_parser, load_config, strip_jsonc_comments


def _write_config(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_strip_jsonc_keeps_strings_intact() -> None:
    raw = '{\n  // comment\n  "url": "https://x.test/a//b", /* inline */ "n": 1\n}'

    assert json.loads(strip_jsonc_comments(raw)) == {"url": "https://x.test/a//b", "n": 1}


def test_strip_jsonc_handles_escaped_quotes_and_unterminated_block() -> None:
    raw = '{"note": "say \\"hi\\" // not a comment", "n": 2} /* trailing, never closed'

    assert json.loads(strip_jsonc_comments(raw)) == {"note": 'say "hi" // not a comment', "n": 2}


def test_file_values_are_used(tmp_path: Path) -> None:
    cfg_file = _write_config(
        tmp_path / "gateway_config.json",
        """{
          // coordinating server
          "server": "relay.example.test",
          "user": "alice",
          "dev": "box-1",
          "proxy": "socks5://127.0.0.1:1080",
          "max_pending": 7,
          "script_cmd": "node -e"
        }""",
    )
    args = build_arg_parser().parse_args(["--config", str(cfg_file)])

    cfg = load_config(args, env={})

    assert cfg.server == "relay.example.test"
    assert cfg.user == "alice"
    assert cfg.dev == "box-1"
    assert cfg.proxy == "socks5://127.0.0.1:1080"
    assert cfg.scheme == "wss"
    assert cfg.max_pending == 7
    assert cfg.script_cmd == ["node", "-e"]


def test_cli_beats_env_beats_file(tmp_path: Path) -> None:
    cfg_file = _write_config(tmp_path / "c.json", '{"server": "file.test", "user": "file-user", "dev": "file-dev"}')
    env = {"RELAY_GATEWAY_CONFIG": str(cfg_file), "RELAY_SERVER": "env.test", "RELAY_USER": "env-user"}
    args = build_arg_parser().parse_args(["--server", "cli.test"])

    cfg = load_config(args, env=env)

    assert cfg.server == "cli.test"
    assert cfg.user == "env-user"
    assert cfg.dev == "file-dev"
    assert cfg.proxy is None


def test_missing_identity_exits(tmp_path: Path) -> None:
    args = build_arg_parser().parse_args(["--config", str(tmp_path / "absent.json"), "--server", "s.test"])

    with pytest.raises(SystemExit, match="RELAY_USER"):
        load_config(args, env={})


def test_invalid_scheme_exits(tmp_path: Path) -> None:
    args = build_arg_parser().parse_args(
        ["--config", str(tmp_path / "absent.json"), "--server", "s", "--user", "u", "--dev", "d", "--scheme", "http"]
    )

    with pytest.raises(SystemExit, match="invalid scheme"):
        load_config(args, env={})


def test_broken_config_file_exits(tmp_path: Path) -> None:
    cfg_file = _write_config(tmp_path / "bad.json", "{not json")
    args = build_arg_parser().parse_args(["--config", str(cfg_file)])

    with pytest.raises(SystemExit, match="failed to load config"):
        load_config(args, env={})
