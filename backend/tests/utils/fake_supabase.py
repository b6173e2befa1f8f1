"""
内存版 Supabase client（仅测试使用）。

中文注释:
- 只实现工作流用到的 PostgREST 链式调用：select/eq/neq/in_/contains/order/limit/insert/update/delete/execute。
- Storage 实现 get_bucket/create_bucket 与 from_(bucket).upload/create_signed_url/remove。
- 可以按表或按存储路径注入失败，用来验证降级 / 幂等 / 修复路径。
"""

from __future__ import annotations

import copy
import threading
from types import SimpleNamespace
from typing import Any, Callable
from uuid import uuid4


class _FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: list[Callable[[dict], bool]] = []
        self._order: list[tuple[str, bool]] = []
        self._limit: int | None = None

    # --- builders ---

    def select(self, *_args, **_kwargs):
        self._op = "select"
        return self

    def insert(self, payload):
        self._op = "insert"
        self._payload = payload
        return self

    def update(self, payload):
        self._op = "update"
        self._payload = payload
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, key, value):
        self._filters.append(lambda row: row.get(key) == value)
        return self

    def neq(self, key, value):
        self._filters.append(lambda row: row.get(key) != value)
        return self

    def in_(self, key, values):
        allowed = list(values)
        self._filters.append(lambda row: row.get(key) in allowed)
        return self

    def contains(self, key, values):
        wanted = list(values)
        self._filters.append(lambda row: all(v in (row.get(key) or []) for v in wanted))
        return self

    def order(self, key, desc: bool = False, **_kwargs):
        self._order.append((key, bool(desc)))
        return self

    def limit(self, n: int, **_kwargs):
        self._limit = int(n)
        return self

    # --- execution ---

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self._filters)

    def execute(self):
        with self.db.lock:
            self.db.calls.append((self.table, self._op))
            failure = self.db.failures.get((self.table, self._op))
            if failure is not None:
                raise failure

            rows = self.db.tables.setdefault(self.table, [])
            if self._op == "insert":
                items = self._payload if isinstance(self._payload, list) else [self._payload]
                created = []
                for item in items:
                    row = copy.deepcopy(dict(item))
                    row.setdefault("id", str(uuid4()))
                    rows.append(row)
                    created.append(copy.deepcopy(row))
                return SimpleNamespace(data=created)

            matched = [r for r in rows if self._matches(r)]
            if self._op == "update":
                for row in matched:
                    row.update(copy.deepcopy(self._payload))
                return SimpleNamespace(data=[copy.deepcopy(r) for r in matched])

            if self._op == "delete":
                self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
                return SimpleNamespace(data=[copy.deepcopy(r) for r in matched])

            out = [copy.deepcopy(r) for r in matched]
            for key, desc in reversed(self._order):
                out.sort(key=lambda r: (r.get(key) is not None, r.get(key) if r.get(key) is not None else ""), reverse=desc)
            if self._limit is not None:
                out = out[: self._limit]
            return SimpleNamespace(data=out)


class _FakeBucket:
    def __init__(self, storage: "_FakeStorage", name: str) -> None:
        self.storage = storage
        self.name = name

    def upload(self, path, content, opts=None):
        for marker in self.storage.fail_paths:
            if marker in path:
                raise RuntimeError(f"upload failed: {path}")
        objects = self.storage.objects.setdefault(self.name, {})
        if path in objects and str((opts or {}).get("upsert")) != "true":
            raise RuntimeError("The resource already exists")
        objects[path] = bytes(content)
        return {"Key": f"{self.name}/{path}"}

    def create_signed_url(self, path, expires_in):
        return {"signedURL": f"https://storage.test/{self.name}/{path}?token=signed&expires_in={expires_in}"}

    def remove(self, paths):
        objects = self.storage.objects.setdefault(self.name, {})
        for path in paths:
            objects.pop(path, None)
        return []


class _FakeStorage:
    def __init__(self) -> None:
        self.buckets: dict[str, dict] = {}
        self.objects: dict[str, dict[str, bytes]] = {}
        self.fail_paths: set[str] = set()

    def get_bucket(self, name):
        if name not in self.buckets:
            raise RuntimeError("Bucket not found")
        return self.buckets[name]

    def create_bucket(self, name, options=None):
        self.buckets[name] = {"name": name, **(options or {})}
        return self.buckets[name]

    def from_(self, name):
        return _FakeBucket(self, name)


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.storage = _FakeStorage()
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.lock = threading.RLock()

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)

    # --- test helpers ---

    def rows(self, table: str) -> list[dict]:
        with self.lock:
            return copy.deepcopy(self.tables.get(table, []))

    def seed(self, table: str, *rows: dict) -> list[dict]:
        created = []
        with self.lock:
            bucket = self.tables.setdefault(table, [])
            for row in rows:
                item = copy.deepcopy(dict(row))
                item.setdefault("id", str(uuid4()))
                bucket.append(item)
                created.append(copy.deepcopy(item))
        return created

    def fail(self, table: str, op: str, exc: Exception | None = None) -> None:
        self.failures[(table, op)] = exc or RuntimeError(f"{table}.{op} failed")

    def clear_failure(self, table: str, op: str) -> None:
        self.failures.pop((table, op), None)
