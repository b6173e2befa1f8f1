from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Iterator


class SubmissionLockRegistry:
    """
    按 submission_id 划分的进程内互斥锁。

    设计目标：
    - 同一稿件上的分配 / 利益冲突 / 审稿提交串行执行；
    - 不同稿件之间互不阻塞（没有全局锁）；
    - 可重入：声明冲突时会在同一把锁内继续执行 resolve。

    跨进程的一致性由数据库上的 compare-and-set 状态更新兜底。
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, RLock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, submission_id: str) -> Iterator[None]:
        key = str(submission_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._holders.get(key, 1) - 1
                if remaining <= 0:
                    self._holders.pop(key, None)
                    self._locks.pop(key, None)
                else:
                    self._holders[key] = remaining

    def active_keys(self) -> set[str]:
        with self._guard:
            return set(self._locks)


submission_locks = SubmissionLockRegistry()
