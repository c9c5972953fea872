from __future__ import annotations

import argparse
import json
import os
import re
import shlex
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping


JsonDict = dict[str, Any]
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_FILE = BASE_DIR / "gateway_config.json"


@dataclass(frozen=True)
class GatewayConfig:
    server: str
    user: str
    dev: str
    proxy: str | None = None
    scheme: str = "wss"
    max_pending: int = 100
    script_cmd: list[str] = field(default_factory=lambda: [sys.executable, "-c"])
    log_dir: Path = BASE_DIR / "log"


_JSONC_TOKEN = re.compile(r'"(?:\\.|[^"\\])*"|//[^\r\n]*|/\*.*?(?:\*/|\Z)', re.S)


def strip_jsonc_comments(s: str) -> str:
    # String literals match first, so comment markers inside them survive.
    return _JSONC_TOKEN.sub(lambda m: m.group(0) if m.group(0).startswith('"') else "", s)


def load_json(path: Path) -> JsonDict:
    try:
        raw = strip_jsonc_comments(path.read_text("utf-8"))
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else {}
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        raise SystemExit(f"failed to load config {str(path)!r}: {e}")


def _cfg_get_str(cfg: JsonDict, key: str) -> str:
    v = cfg.get(key)
    return v.strip() if isinstance(v, str) else ""


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="relay-gateway", description="Relay HTTP tasks for a coordinating server.")
    ap.add_argument("--config", default="", help="path to gateway_config.json")
    ap.add_argument("--server", default="", help="coordinating server address (host[:port])")
    ap.add_argument("--user", default="", help="user identity sent in the register frame")
    ap.add_argument("--dev", default="", help="device identity sent in the register frame")
    ap.add_argument("--proxy", default="", help="outbound proxy (e.g. socks5://127.0.0.1:1080)")
    ap.add_argument("--scheme", default="", help="websocket scheme, wss (default) or ws")
    ap.add_argument("--max-pending", default="", help="max concurrently running tasks")
    ap.add_argument("--script-cmd", default="", help="command used to run post-processing scripts")
    ap.add_argument("--log-dir", default="", help="directory for gateway.log")
    return ap


def load_config(args: argparse.Namespace, env: Mapping[str, str] | None = None) -> GatewayConfig:
    env = os.environ if env is None else env

    cfg_path: Path | None = None
    if args.config or env.get("RELAY_GATEWAY_CONFIG"):
        cfg_path = Path(args.config or env["RELAY_GATEWAY_CONFIG"])
    elif DEFAULT_CONFIG_FILE.exists():
        cfg_path = DEFAULT_CONFIG_FILE
    cfg = load_json(cfg_path) if cfg_path else {}

    def pick(arg: str, env_name: str, key: str, default: str = "") -> str:
        return (arg or "").strip() or (env.get(env_name) or "").strip() or _cfg_get_str(cfg, key) or default

    server = pick(args.server, "RELAY_SERVER", "server")
    user = pick(args.user, "RELAY_USER", "user")
    dev = pick(args.dev, "RELAY_DEV", "dev")
    proxy = pick(args.proxy, "RELAY_PROXY", "proxy")
    scheme = pick(args.scheme, "RELAY_SCHEME", "scheme", "wss").lower()
    script_cmd = pick(args.script_cmd, "RELAY_SCRIPT_CMD", "script_cmd")
    log_dir = pick(args.log_dir, "RELAY_LOG_DIR", "log_dir")

    max_pending_raw = (args.max_pending or "").strip() or (env.get("RELAY_MAX_PENDING") or "").strip() or str(cfg.get("max_pending") or 100)
    try:
        max_pending = max(1, int(max_pending_raw))
    except ValueError:
        raise SystemExit(f"invalid max_pending: {max_pending_raw!r}")

    if not server:
        raise SystemExit("missing RELAY_SERVER / --server")
    if not user:
        raise SystemExit("missing RELAY_USER / --user")
    if not dev:
        raise SystemExit("missing RELAY_DEV / --dev")
    if scheme not in ("ws", "wss"):
        raise SystemExit(f"invalid scheme: {scheme!r} (expected ws or wss)")

    out = GatewayConfig(server=server, user=user, dev=dev, proxy=proxy or None, scheme=scheme, max_pending=max_pending)
    if script_cmd:
        out = replace(out, script_cmd=shlex.split(script_cmd))
    if log_dir:
        p = Path(log_dir).expanduser()
        out = replace(out, log_dir=p if p.is_absolute() else (BASE_DIR / p).resolve())
    return out
