"""
描述: 进程间文件锁
主要功能:
    - 文件定时器存储在读改写期间独占 <timers.json>.lock
    - fcntl (POSIX) / msvcrt (Windows) 二选一，导入时确定
    - 轮询重试，超时抛出 LockTimeout
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import IO

if os.name == "nt":
    import msvcrt

    def _try_lock(handle: IO[str]) -> None:
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(handle: IO[str]) -> None:
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class LockTimeout(TimeoutError):
    """在 timeout 内没有拿到文件锁"""

    def __init__(self, path: Path, waited: float) -> None:
        super().__init__(f"Timeout acquiring lock {path} after {waited:.2f}s")
        self.path = path


class FileLock:
    """
    独占文件锁 (with FileLock(path): ...)

    同一实例在单个线程内不可重入；FileTimerStore 每次操作只持有一次。
    """

    def __init__(self, lock_path: str | Path, timeout: float = 5.0, poll_interval: float = 0.05) -> None:
        self._path = Path(lock_path)
        self._timeout = max(0.0, float(timeout))
        self._poll_interval = poll_interval
        self._handle: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+", encoding="utf-8")
        deadline = time.monotonic() + self._timeout
        while True:
            try:
                _try_lock(handle)
            except OSError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeout(self._path, self._timeout) from None
                time.sleep(self._poll_interval)
            else:
                self._handle = handle
                return

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock(handle)
        finally:
            handle.close()

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
