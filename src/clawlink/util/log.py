from __future__ import annotations

import os
import re
import sys

_PREFIX = "[clawlink]"

_verbose = os.getenv("CLAWLINK_DEBUG", "") not in ("", "0", "false")

_REDACT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    # Signed auth payloads carry the bearer token between the timestamp and the nonce.
    (re.compile(r"(v2\|[0-9a-f]{64}\|[^|]*\|[^|]*\|[^|]*\|[^|]*\|\d+\|)[^|]*(\|)"), r"\1<TOKEN>\2"),
    (re.compile(r'("(?:token|deviceToken|signature)"\s*:\s*")[^"]*(")'), r"\1<REDACTED>\2"),
    (re.compile(r"\b(Bearer\s+)\S+"), r"\1<TOKEN>"),
)


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = bool(enabled)


def redact(s: str) -> str:
    for pat, repl in _REDACT_PATTERNS:
        s = pat.sub(repl, s)
    return s


def log(msg: str) -> None:
    # stdout belongs to chat output; logs go to stderr.
    try:
        print(f"{_PREFIX} {redact(msg)}", file=sys.stderr, flush=True)
    except Exception:
        pass


def debug(msg: str) -> None:
    if _verbose:
        log(msg)


def clip(text: str, limit: int = 200) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
