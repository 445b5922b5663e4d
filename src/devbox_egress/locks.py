"""Cross-process locks keyed by container identity.

The CLI starts a new process for every command, so an ``asyncio.Lock`` alone
only serializes operations inside one controller. Each identity also gets an
advisory ``flock`` on ``<rules_root>/.locks/<id>.lock``, held for the whole
operation.

The lock file may be unlinked by its holder (``destroy`` does this). A waiter
that opened the old inode notices after acquiring it and retries on the new
file.
"""

import asyncio
import fcntl
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_DIR = ".locks"


class IdentityFileLock:
    """Exclusive advisory lock on one identity's lock file."""

    def __init__(self, path: Path, poll_interval: float = 0.05):
        self.path = path
        self.poll_interval = poll_interval
        self._fd: int | None = None

    async def acquire(self) -> None:
        """Wait until the lock is held.

        Polls with a non-blocking ``flock`` so a cancelled waiter never leaves
        a lock behind in a worker thread.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        waited = False
        while True:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if not waited:
                    logger.debug(f"Waiting for lock {self.path.name} held by another process")
                    waited = True
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                current = os.stat(self.path)
            except FileNotFoundError:
                current = None
            if current is not None and os.path.samestat(os.fstat(fd), current):
                self._fd = fd
                return

            # Previous holder unlinked the file while we waited
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def release(self, unlink: bool = False) -> None:
        if self._fd is None:
            return
        if unlink:
            self.path.unlink(missing_ok=True)
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
