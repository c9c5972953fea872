from __future__ import annotations

from typing import Callable

import httpx


ClientFactory = Callable[[str | None, float], httpx.AsyncClient]


def build_http_client(proxy: str | None, timeout_s: float) -> httpx.AsyncClient:
    """
    One client per task, like a plain fetch call.

    `proxy` may be any URL httpx accepts; `socks5://` / `socks5h://` need the
    `httpx[socks]` extra. Without a proxy the environment is not consulted so
    routing stays direct.
    """
    timeout = httpx.Timeout(timeout_s, connect=min(10.0, timeout_s))
    return httpx.AsyncClient(
        proxy=proxy or None,
        timeout=timeout,
        trust_env=False,
        follow_redirects=True,
    )
