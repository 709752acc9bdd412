"""Structured event log — bounded ring buffer consumed by the dashboard."""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("bullbust.events")


class EventLog:
    """Timestamped events, newest kept, oldest dropped beyond *maxlen*."""

    def __init__(self, maxlen: int = 500) -> None:
        self._entries: deque[dict] = deque(maxlen=maxlen)

    def record(
        self,
        event: str,
        instrument: Optional[str] = None,
        now: Optional[datetime] = None,
        **detail,
    ) -> dict:
        """Append an event and echo it to the ``bullbust.events`` logger."""
        if now is None:
            now = datetime.now(timezone.utc)
        entry = {
            "timestamp": now.isoformat(),
            "event": event,
            "instrument": instrument,
            "detail": detail,
        }
        self._entries.append(entry)
        logger.info("%s %s %s", event, instrument or "-", detail)
        return entry

    def recent(self, limit: int = 50, event: Optional[str] = None) -> list[dict]:
        """Newest-first entries, optionally filtered by event type."""
        out: list[dict] = []
        for entry in reversed(self._entries):
            if event is not None and entry["event"] != event:
                continue
            out.append(entry)
            if len(out) >= limit:
                break
        return out

    def __len__(self) -> int:
        return len(self._entries)
