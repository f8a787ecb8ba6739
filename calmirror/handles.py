from __future__ import annotations

import re
import unicodedata

from calmirror.models import Occurrence


MAX_HANDLE_LENGTH = 60
FALLBACK_BASE = "e"

_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")


def normalize_base(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", str(text or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM_RUN.sub("-", stripped.lower()).strip("-")


def build_handle(occurrence: Occurrence, max_length: int = MAX_HANDLE_LENGTH) -> str:
    suffix = str(int(occurrence.start.timestamp()))
    room = max_length - len(suffix) - 1
    if room < len(FALLBACK_BASE):
        raise ValueError(f"max_length {max_length} cannot hold a handle with suffix {suffix}")
    base = normalize_base(occurrence.uid or occurrence.summary) or FALLBACK_BASE
    # The timestamp suffix is never truncated; only the base gives way.
    base = base[:room].rstrip("-") or FALLBACK_BASE
    return f"{base}-{suffix}"
