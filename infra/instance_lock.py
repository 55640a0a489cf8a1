"""
Single Instance Lock - Prevent Overlapping Monitor Runs

Uses a PID file so a scheduled invocation that starts while the previous
one is still inside its budget refuses to run instead of evaluating the same
positions twice.

The lock is released on clean exit via atexit. Signal handling belongs to
the monitor loop, which finishes its in-flight tick before exiting.
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
        lock = SingleInstanceLock("scalp-monitor")
        if not lock.acquire():
            sys.exit(1)

        # Run monitor...

        lock.release()  # Optional - auto-released on exit
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
        """Signal 0 probes for the process without touching it"""
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another instance is running
        """
        if self.acquired:
            logger.warning("Lock already acquired by this instance")
            return True

        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as e:
                logger.warning(f"Invalid lock file, removing: {e}")
                self.lock_file.unlink(missing_ok=True)
            else:
                if existing_pid != os.getpid() and self._is_process_running(existing_pid):
                    logger.error(
                        f"Another monitor run is active (PID={existing_pid}). "
                        f"Lock file: {self.lock_file}"
                    )
                    return False
                logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
                self.lock_file.unlink(missing_ok=True)

        try:
            current_pid = os.getpid()
            self.lock_file.write_text(str(current_pid))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        self.acquired = True
        logger.info(f"Lock acquired (PID={current_pid}, file={self.lock_file})")
        return True

    def release(self) -> None:
        """Release the lock (delete PID file)"""
        if not self.acquired:
            return
        try:
            self.lock_file.unlink(missing_ok=True)
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


def check_single_instance(name: str = "scalp-monitor",
                          lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """
    Acquire the single instance lock.

    Returns:
        SingleInstanceLock if successful, None if another instance is running
    """
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
