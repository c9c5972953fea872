from __future__ import annotations

from typing import Any


def kv(**items: object) -> str:
    parts: list[str] = []
    for k, v in items.items():
        if v is None:
            continue
        s = str(v).replace("\n", "\\n")
        parts.append(f"{k}={s}")
    return " ".join(parts)


def short_text(v: Any, limit: int = 160) -> str:
    s = str(v or "").strip().replace("\n", " ")
    if len(s) <= limit:
        return s
    return s[: limit - 3] + "..."
