"""Per-connection statistics for downstream miners, kept by a background task."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Any

logger = logging.getLogger(__name__)

STATS_QUEUE_SIZE = 100


@dataclass
class DownstreamConnectionStats:
    """Counters and readings for one downstream connection."""

    device_name: str | None = None
    hashrate: float = 0.0
    accepted_shares: int = 0
    rejected_shares: int = 0
    current_difficulty: float = 0.0


class _Op(Enum):
    SETUP = auto()
    HASHRATE = auto()
    DIFF = auto()
    ACCEPTED = auto()
    REJECTED = auto()
    DEVICE_NAME = auto()
    REMOVE = auto()
    GET = auto()


_Command = tuple[_Op, Any, Any]


class StatsManager:
    """Owns the statistics table and applies commands taken from a queue."""

    def __init__(self, queue: asyncio.Queue[_Command]) -> None:
        self.stats: dict[int, DownstreamConnectionStats] = {}
        self._queue = queue

    async def run(self) -> None:
        """Apply commands until the task is cancelled."""
        while True:
            op, connection_id, value = await self._queue.get()
            self._apply(op, connection_id, value)

    def _apply(self, op: _Op, connection_id: Any, value: Any) -> None:
        match op:
            case _Op.SETUP:
                self.stats[connection_id] = DownstreamConnectionStats()
                return
            case _Op.REMOVE:
                self.stats.pop(connection_id, None)
                return
            case _Op.GET:
                if not value.done():
                    value.set_result({key: replace(entry) for key, entry in self.stats.items()})
                return

        entry = self.stats.get(connection_id)
        if entry is None:
            return
        match op:
            case _Op.HASHRATE:
                entry.hashrate = value
            case _Op.DIFF:
                entry.current_difficulty = value
            case _Op.ACCEPTED:
                entry.accepted_shares += 1
            case _Op.REJECTED:
                entry.rejected_shares += 1
            case _Op.DEVICE_NAME:
                entry.device_name = value


class StatsSender:
    """Handle for sending updates to a running StatsManager.

    Must be created inside a running event loop. Updates that cannot be
    queued are dropped with a warning.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[_Command] = asyncio.Queue(maxsize=STATS_QUEUE_SIZE)
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(StatsManager(self._queue).run())

    def _send(self, op: _Op, connection_id: Any = None, value: Any = None) -> bool:
        if self._closed:
            logger.warning("Failed to send command %s: channel closed", op.name)
            return False
        try:
            self._queue.put_nowait((op, connection_id, value))
        except asyncio.QueueFull:
            logger.warning("Failed to send command %s: channel full", op.name)
            return False
        return True

    def setup_stats(self, connection_id: int) -> None:
        self._send(_Op.SETUP, connection_id)

    def update_hashrate(self, connection_id: int, hashrate: float) -> None:
        self._send(_Op.HASHRATE, connection_id, hashrate)

    def update_diff(self, connection_id: int, diff: float) -> None:
        self._send(_Op.DIFF, connection_id, diff)

    def update_accepted_shares(self, connection_id: int) -> None:
        self._send(_Op.ACCEPTED, connection_id)

    def update_rejected_shares(self, connection_id: int) -> None:
        self._send(_Op.REJECTED, connection_id)

    def update_device_name(self, connection_id: int, name: str) -> None:
        self._send(_Op.DEVICE_NAME, connection_id, name)

    def remove_stats(self, connection_id: int) -> None:
        self._send(_Op.REMOVE, connection_id)

    async def collect_stats(self) -> dict[int, DownstreamConnectionStats]:
        """Return a copy of all statistics.

        Raises RuntimeError when the request cannot reach the manager.
        """
        future: asyncio.Future[dict[int, DownstreamConnectionStats]] = (
            asyncio.get_running_loop().create_future()
        )
        if not self._send(_Op.GET, None, future):
            raise RuntimeError("channel closed")
        return await future

    def close(self) -> None:
        """Stop the manager; pending and later requests fail."""
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        while not self._queue.empty():
            op, _, value = self._queue.get_nowait()
            if op is _Op.GET and not value.done():
                value.set_exception(RuntimeError("channel closed"))