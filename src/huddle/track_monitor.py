"""Polling monitor for remote track state.

Remote peers announce mute changes with StatusUpdate messages, but a track
can also end or be disabled without one. The monitor samples each watched
stream's audio/video flags on an interval and reports only changes.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from huddle.media import AUDIO, VIDEO, MediaStream

logger = logging.getLogger(__name__)

# (peer_id, has_audio, has_video)
FlagsCallback = Callable[[str, bool, bool], None]


def stream_flags(stream: MediaStream) -> tuple[bool, bool]:
    """Current (has_audio, has_video) for a stream."""
    return stream.has_live(AUDIO), stream.has_live(VIDEO)


class TrackMonitor:
    """One polling task per watched peer."""

    def __init__(
        self,
        on_change: FlagsCallback,
        interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize monitor.

        Args:
            on_change: Called with the new flags whenever they change.
            interval: Seconds between samples.
            sleep: Sleep function (injectable for testing).
        """
        self._on_change = on_change
        self._interval = interval
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    def watch(self, peer_id: str, stream: MediaStream) -> tuple[bool, bool]:
        """Start polling a peer's stream, replacing any earlier watch.

        Returns:
            The baseline flags; only later changes are reported.
        """
        self.unwatch(peer_id)
        baseline = stream_flags(stream)
        self._tasks[peer_id] = asyncio.create_task(self._poll(peer_id, stream, baseline))
        return baseline

    def unwatch(self, peer_id: str) -> None:
        task = self._tasks.pop(peer_id, None)
        if task is not None:
            task.cancel()

    def is_watching(self, peer_id: str) -> bool:
        return peer_id in self._tasks

    async def stop(self) -> None:
        """Cancel every polling task and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll(self, peer_id: str, stream: MediaStream, previous: tuple[bool, bool]) -> None:
        while True:
            await self._sleep(self._interval)
            current = stream_flags(stream)
            if current == previous:
                continue
            previous = current
            logger.debug(f"Track flags for {peer_id[:8]}...: audio={current[0]} video={current[1]}")
            try:
                self._on_change(peer_id, *current)
            except Exception as e:
                logger.error(f"Track monitor callback error: {e}")
