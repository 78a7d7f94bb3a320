"""TTL-based single-flight guard for costly side-effecting triggers."""
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .. import metrics

_WS_RE = re.compile(r'\s+')
_TRAILING_PUNCT_RE = re.compile(r'[\s.,;:!?)\]}\'"]+$')


def normalize_key(text: str, strip_punctuation: bool = False) -> str:
    """Lower-case, trim and collapse whitespace; optionally drop trailing punctuation."""
    key = _WS_RE.sub(' ', (text or '').strip().lower())
    if strip_punctuation:
        key = _TRAILING_PUNCT_RE.sub('', key)
    return key


@dataclass
class TriggerCacheEntry:
    key: str
    last_fired_at: float


class TriggerDeduplicator:
    """Remembers when each key last fired.

    ``should_fire`` checks and records in one synchronous step, so two
    callers on the same event loop can never both observe "not fired
    recently". Entries are never swept; a stale one just compares as expired.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, TriggerCacheEntry] = {}

    def should_fire(self, key: str, ttl_ms: int) -> bool:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and (now - entry.last_fired_at) * 1000.0 < ttl_ms:
            metrics.dedup_suppressed_counter.inc()
            return False
        if entry is None:
            self._entries[key] = TriggerCacheEntry(key=key, last_fired_at=now)
        else:
            entry.last_fired_at = now
        return True

    def last_fired(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        return entry.last_fired_at if entry else None

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
