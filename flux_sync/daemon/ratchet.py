"""Tracks the sync marker across cycles of a single daemon."""

import logging

from flux_sync.sync_state import MarkerUpdate, SyncState

__all__ = [
    "SyncRatchet",
]

_LOGGER = logging.getLogger(__name__)


class SyncRatchet:
    """Moves the sync marker forward and notices when someone else moves it.

    The revision most recently written by this daemon is kept in memory. If
    the marker is later found somewhere else, another daemon is sharing it,
    which is warned about once.
    """

    def __init__(self, state: SyncState) -> None:
        self._state = state
        self._revision = ""
        self._warned = False

    @property
    def state(self) -> SyncState:
        return self._state

    async def current(self) -> str:
        return await self._state.get_revision()

    async def update(self, old: str, new: str) -> MarkerUpdate:
        """Move the marker from `old` to `new`."""
        if self._revision and old != self._revision and not self._warned:
            _LOGGER.warning(
                "Detected external change in sync state %s; the sync state "
                "should not be shared between daemons",
                self._state,
            )
            self._warned = True
        if new == old or new == self._revision:
            return MarkerUpdate.UNCHANGED
        result = await self._state.update_marker(old, new)
        if result == MarkerUpdate.MOVED:
            self._revision = new
            _LOGGER.info("Moved sync marker %s from %s to %s", self._state, old, new)
        return result
