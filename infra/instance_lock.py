"""
Single Instance Lock

PID file guarding the engine's state file: two engines polling the same
accounts would send every chat reply twice and race on ad counters.

Stale PID files (process gone) are reclaimed automatically.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("p2p-engine")
        if not lock.acquire():
            sys.exit(1)
        ...
        lock.release()  # also released at interpreter exit
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Returns:
            True if the lock is ours, False if a live process holds it
        """
        if self.acquired:
            return True

        for _ in range(2):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._holder_pid()
                if holder is not None and holder != os.getpid() and self._is_process_running(holder):
                    logger.error(f"Another engine instance is running (PID={holder}, lock file {self.lock_file})")
                    return False
                logger.warning(f"Removing stale lock file {self.lock_file} (PID={holder})")
                try:
                    self.lock_file.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self.acquired = True
            logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
            return True
        return False

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self._holder_pid() == os.getpid():
                self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
