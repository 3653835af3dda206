# services/log_tailer.py
"""
Follows a server's games log on the local filesystem.

New complete lines are handed to a callback (normally
ServerInstance.handle_log_line). The read position is kept in memory;
a file that shrinks is treated as rotated and read from the start.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class LogTailer:
    """Background poller for one log file."""

    def __init__(self, path: str, callback: Callable[[str], Awaitable], from_end: bool = True):
        self.path = Path(path)
        self.callback = callback
        self.from_end = from_end
        self.position: Optional[int] = None
        self._partial = ""
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def read_new_lines(self) -> list[str]:
        """Read complete lines appended since the last call."""
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []

        if self.position is None:
            self.position = size if self.from_end else 0
        if size < self.position:
            logger.info(f"Log file {self.path} was rotated, reading from start")
            self.position = 0
            self._partial = ""

        if size == self.position:
            return []

        with self.path.open('rb') as handle:
            handle.seek(self.position)
            chunk = handle.read(size - self.position)
        self.position = size

        text = self._partial + chunk.decode('utf-8', errors='replace')
        lines = text.split('\n')
        self._partial = lines.pop()
        return [line.rstrip('\r') for line in lines if line.strip()]

    async def poll(self) -> int:
        """Deliver new lines to the callback. Returns how many were read."""
        lines = await asyncio.to_thread(self.read_new_lines)
        for line in lines:
            try:
                await self.callback(line)
            except Exception as e:
                logger.error(f"Error handling log line from {self.path}: {e}", exc_info=True)
        return len(lines)

    async def start(self, poll_interval: float = 1.0) -> None:
        """Start the tail loop."""
        if self._running:
            logger.warning(f"Log tailer for {self.path} already running")
            return

        self._running = True
        logger.info(f"Tailing {self.path} every {poll_interval}s")

        async def tail_loop():
            while self._running:
                try:
                    await self.poll()
                except Exception as e:
                    logger.error(f"Error in log tail loop: {e}", exc_info=True)
                await asyncio.sleep(poll_interval)

        self._task = asyncio.create_task(tail_loop())

    async def stop(self) -> None:
        """Stop the tail loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
