"""
Durable, lock-protected storage of harness coordination state.

One state file per (project, mode):

    <project>/.provider-harness/
        <mode>_state.json     - Current HarnessState, wrapped in an envelope
        .<mode>_state.lock    - Advisory lock file

Writes go through a temp file in the same directory, are fsync'ed and then
renamed over the target, so readers only ever see a fully written snapshot.
An exclusive fcntl lock serializes writers across processes; a
threading.Lock does the same within one process. Waiting for the lock is
bounded and fails with LockAcquisitionError.

Corrupt or unreadable state files load as empty state. Permission errors
propagate.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

from provider_harness.core.errors import LockAcquisitionError, StatePersistenceError
from provider_harness.core.models import HarnessState, utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_STATE_DIR = ".provider-harness"
LOCK_TIMEOUT_SECONDS = 5.0
LOCK_POLL_SECONDS = 0.01

StateMutator = Callable[[HarnessState], Optional[HarnessState]]


class StateStore:
    """JSON file store for HarnessState with advisory locking.

    Args:
        project_dir: Project whose state this store owns
        mode: Harness mode; each mode keeps its own state file
        state_dir: State directory, relative to ``project_dir`` unless absolute
        lock_timeout: Maximum seconds to wait for the file lock
        clock: Returns the current timezone-aware time (injectable for tests)
    """

    def __init__(
        self,
        project_dir: Union[str, Path],
        mode: str = "default",
        *,
        state_dir: Union[str, Path] = DEFAULT_STATE_DIR,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.mode = mode
        state_path = Path(state_dir).expanduser()
        self.state_dir = state_path if state_path.is_absolute() else self.project_dir / state_path
        self.state_file = self.state_dir / f"{mode}_state.json"
        self.lock_file = self.state_dir / f".{mode}_state.lock"
        self.lock_timeout = lock_timeout
        self._clock = clock or utcnow
        self._thread_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Any) -> "StateStore":
        """Build a store from a HarnessConfig's project, mode and persistence section."""
        return cls(
            config.project_dir,
            config.mode,
            state_dir=config.persistence.state_dir,
            lock_timeout=config.persistence.lock_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _acquire_lock(self, exclusive: bool = True, timeout: Optional[float] = None) -> int:
        """
        Acquire the advisory file lock, polling until ``timeout`` elapses.

        Returns:
            File descriptor holding the lock.

        Raises:
            LockAcquisitionError: If the lock cannot be acquired within timeout.
        """
        timeout = self.lock_timeout if timeout is None else timeout
        lock_type = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH

        self.state_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_file), os.O_RDWR | os.O_CREAT, 0o644)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, lock_type | fcntl.LOCK_NB)
                return fd
            except BlockingIOError:
                if time.monotonic() - start_time >= timeout:
                    os.close(fd)
                    raise LockAcquisitionError(
                        f"Failed to acquire {'exclusive' if exclusive else 'shared'} lock "
                        f"on {self.lock_file} within {timeout} seconds",
                        lock_path=str(self.lock_file),
                        timeout=timeout,
                    )
                time.sleep(LOCK_POLL_SECONDS)

    def _release_lock(self, fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def locked(self, exclusive: bool = True) -> Iterator[None]:
        """Hold the thread lock and the file lock for the duration of the block."""
        if not self._thread_lock.acquire(timeout=self.lock_timeout):
            raise LockAcquisitionError(
                f"Failed to acquire state lock for mode '{self.mode}' within {self.lock_timeout} seconds",
                lock_path=str(self.lock_file),
                timeout=self.lock_timeout,
            )
        try:
            fd = self._acquire_lock(exclusive=exclusive)
            try:
                yield
            finally:
                self._release_lock(fd)
        finally:
            self._thread_lock.release()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load_state(self) -> HarnessState:
        """Load the persisted state, or an empty state if none is usable."""
        if not self.state_file.exists():
            return HarnessState()
        with self.locked(exclusive=False):
            return self._read()

    def save_state(self, state: HarnessState) -> None:
        """Persist ``state`` atomically under the exclusive lock."""
        with self.locked(exclusive=True):
            self._write(state)

    def update_state(self, mutator: StateMutator) -> HarnessState:
        """
        Read-modify-write the state under one exclusive lock.

        Args:
            mutator: Receives the current state; may mutate it in place or
                return a replacement

        Returns:
            The state that was written
        """
        with self.locked(exclusive=True):
            state = self._read()
            replacement = mutator(state)
            if replacement is not None:
                state = replacement
            self._write(state)
            return state

    def has_state(self) -> bool:
        return self.state_file.exists()

    def clear_state(self) -> bool:
        """Delete the state file; returns whether one existed."""
        with self.locked(exclusive=True):
            try:
                self.state_file.unlink()
            except FileNotFoundError:
                return False
        logger.info("Cleared harness state for mode '%s'", self.mode)
        return True

    def state_metadata(self) -> Dict[str, Any]:
        """Envelope fields and file facts, without decoding the state itself."""
        metadata: Dict[str, Any] = {
            "path": str(self.state_file),
            "mode": self.mode,
            "exists": self.state_file.exists(),
        }
        if not metadata["exists"]:
            return metadata

        stat = self.state_file.stat()
        metadata["size_bytes"] = stat.st_size
        metadata["modified_at"] = datetime.fromtimestamp(stat.st_mtime).astimezone().isoformat()
        try:
            envelope = json.loads(self.state_file.read_text(encoding="utf-8"))
            metadata["schema_version"] = envelope.get("schema_version")
            metadata["saved_at"] = envelope.get("saved_at")
            metadata["project_dir"] = envelope.get("project_dir")
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError) as e:
            metadata["error"] = f"Unreadable state file: {e}"
        return metadata

    def cleanup_old_state(self, days: int = 7) -> int:
        """
        Remove state files and stale temp files untouched for ``days`` days.

        Returns:
            Number of files removed
        """
        if not self.state_dir.exists():
            return 0

        cutoff = (self._clock() - timedelta(days=days)).timestamp()
        removed = 0
        with self.locked(exclusive=True):
            for path in list(self.state_dir.glob("*_state.json")) + list(
                self.state_dir.glob(".*.tmp")
            ):
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
                    logger.info("Removed old state file %s", path.name)
        return removed

    # ------------------------------------------------------------------
    # File I/O (callers hold the lock)
    # ------------------------------------------------------------------

    def _read(self) -> HarnessState:
        try:
            raw = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return HarnessState()
        except PermissionError:
            raise
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Unreadable state file %s, starting empty: %s", self.state_file, e)
            return HarnessState()

        try:
            envelope = json.loads(raw)
            if envelope.get("schema_version") != SCHEMA_VERSION:
                logger.warning(
                    "State file %s has schema version %s (expected %s)",
                    self.state_file,
                    envelope.get("schema_version"),
                    SCHEMA_VERSION,
                )
            return HarnessState.from_dict(envelope["state"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Corrupt state file %s, starting empty: %s", self.state_file, e)
            return HarnessState()

    def _write(self, state: HarnessState) -> None:
        envelope = {
            "schema_version": SCHEMA_VERSION,
            "mode": self.mode,
            "project_dir": str(self.project_dir),
            "saved_at": self._clock().isoformat(),
            "state": state.to_dict(),
        }

        fd, temp_path = tempfile.mkstemp(
            suffix=".tmp",
            prefix=f".{self.mode}_state_",
            dir=self.state_dir,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(envelope, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.state_file)
        except BaseException as e:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            if isinstance(e, OSError) and not isinstance(e, PermissionError):
                raise StatePersistenceError(f"Failed to write {self.state_file}: {e}") from e
            raise
