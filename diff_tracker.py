"""
New-marker detection across polling cycles
"""
import logging
import time
from typing import Callable, Dict, Iterable, List, Set

logger = logging.getLogger(__name__)

NEW_MARKER_SECONDS = 5.0


class NewItemTracker:
    """Flags markers that show up between polls and clears the flags in batch.

    Every poll that brings at least one unseen id schedules a clear of ALL
    flags `decay_seconds` later. Clears are not per marker: the earliest due
    clear wipes every flag, including ones raised by a later batch.
    """

    def __init__(self, decay_seconds: float = NEW_MARKER_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.decay_seconds = float(decay_seconds)
        self.clock = clock
        self.seen: Set[str] = set()
        self.pending_clears: List[float] = []

    def reset(self) -> None:
        """Forget every id; the next fetch flags nothing."""
        self.seen.clear()

    def merge(self, fetched: Iterable[Dict], previous: Iterable[Dict] = (), polling: bool = True) -> List[Dict]:
        """Return the fetched markers with `is_new` set, and remember their ids."""
        previously_new = {m.get("id") for m in previous if m.get("is_new")}
        merged: List[Dict] = []
        detected = 0
        for marker in fetched:
            marker_id = marker.get("id")
            fresh = polling and marker_id not in self.seen
            if fresh:
                detected += 1
            merged.append(dict(marker, is_new=fresh or marker_id in previously_new))

        self.seen.update(m.get("id") for m in merged)

        if detected:
            self.pending_clears.append(self.clock() + self.decay_seconds)
            logger.debug(f"{detected} new marker(s) detected")
        return merged

    def clear_due(self) -> bool:
        """Drop due clear deadlines; True if at least one fell due."""
        now = self.clock()
        due = [t for t in self.pending_clears if t <= now]
        if not due:
            return False
        self.pending_clears = [t for t in self.pending_clears if t > now]
        return True

    def expire(self, markers: List[Dict]) -> List[Dict]:
        """Clear every `is_new` flag if a scheduled clear has fallen due."""
        if not self.clear_due():
            return markers
        return [dict(m, is_new=False) for m in markers]
