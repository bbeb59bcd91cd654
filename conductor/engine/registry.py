"""Process registry: maps process ids to live ProcessEntry records.

Single source of truth for "is this session's process still
controllable". Owns the at-most-one-entry-per-id invariant.
"""
from __future__ import annotations

import logging
import threading

from .errors import (
    ProcessAlreadyRegisteredError,
    ProcessInactiveError,
    ProcessNotFoundError,
)
from .models import ProcessEntry

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """In-memory map of process id to ProcessEntry.

    Insert and remove are the only critical sections; they are guarded
    by a lock so concurrent launches never corrupt each other.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ProcessEntry] = {}
        self._lock = threading.Lock()

    def register(self, entry: ProcessEntry) -> None:
        """Add an entry. Raises ProcessAlreadyRegisteredError on a duplicate id."""
        with self._lock:
            if entry.process_id in self._entries:
                raise ProcessAlreadyRegisteredError(entry.process_id)
            self._entries[entry.process_id] = entry
            count = len(self._entries)
        logger.info(
            "Process registered process=%s session=%s project=%s active_count=%d",
            entry.process_id, entry.session_id, entry.project_path, count,
        )

    def lookup(self, process_id: str) -> ProcessEntry | None:
        """Return the entry, or None if missing."""
        return self._entries.get(process_id)

    def require(self, process_id: str) -> ProcessEntry:
        """Return an active entry or raise ProcessNotFound/ProcessInactive."""
        entry = self._entries.get(process_id)
        if entry is None:
            raise ProcessNotFoundError(process_id)
        if not entry.is_active:
            raise ProcessInactiveError(process_id)
        return entry

    def mark_inactive(self, process_id: str) -> bool:
        """Flag the entry inactive. Returns True only on the actual transition."""
        entry = self._entries.get(process_id)
        if entry is None:
            return False
        changed = entry.mark_inactive()
        if changed:
            logger.info("Process marked inactive process=%s", process_id)
        return changed

    def remove(self, process_id: str) -> ProcessEntry | None:
        """Delete the entry and fire its cancellation token if still armed.

        This is the only deletion path. Returns the removed entry, or
        None if it was not registered.
        """
        with self._lock:
            entry = self._entries.pop(process_id, None)
            count = len(self._entries)
        if entry is None:
            return None
        entry.mark_inactive()
        released = entry.cancellation.cancel()
        logger.info(
            "Process removed process=%s released_token=%s active_count=%d",
            process_id, released, count,
        )
        return entry

    def list_active(self) -> list[str]:
        """Ids of entries that are still active, in registration order."""
        return [pid for pid, e in list(self._entries.items()) if e.is_active]

    def entries(self) -> list[ProcessEntry]:
        return list(self._entries.values())

    def __contains__(self, process_id: object) -> bool:
        return process_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
