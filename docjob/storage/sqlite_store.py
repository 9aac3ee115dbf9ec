from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from docjob.errors import NotFoundError


SCHEMA_VERSION = 1

JOB_STATUSES = ("queued", "running", "succeeded", "failed", "canceled")
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})

Clock = Callable[[], float]


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def default_db_path() -> str:
    return os.getenv("DOCJOB_SQLITE_PATH", "data/docjob.db")


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    type: str
    payload: dict[str, Any]
    status: str
    progress: float
    result: Any
    error: str | None
    error_code: str | None
    created_at: float
    updated_at: float
    started_at: float | None
    ended_at: float | None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "JobRecord":
        return cls(
            job_id=str(row["id"]),
            type=str(row["type"]),
            payload=_json_loads(row["payload_json"]) or {},
            status=str(row["status"]),
            progress=float(row["progress"] or 0.0),
            result=_json_loads(row["result_json"]),
            error=row["error"],
            error_code=row["error_code"],
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            started_at=float(row["started_at"]) if row["started_at"] is not None else None,
            ended_at=float(row["ended_at"]) if row["ended_at"] is not None else None,
        )


_JOB_COLUMNS = """
  id, type, payload_json, status, progress, result_json, error, error_code,
  created_at, updated_at, started_at, ended_at
"""


class SQLiteStore:
    """SQLite-backed store for jobs and the audit log.

    Design constraints:
    - Single process; the engine is the only writer of job state.
    - Every status write is one guarded UPDATE, so a terminal row is never
      overwritten no matter which writer gets there second.
    - The clock is injectable so staleness can be tested without sleeping.
    """

    def __init__(self, db_path: str | Path | None = None, *, clock: Clock | None = None) -> None:
        raw = str(db_path or default_db_path())
        if raw == ":memory:":
            self.db_path: Path | None = None
        else:
            self.db_path = Path(raw).expanduser().resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock: Clock = clock or time.time
        # The event loop thread and FastAPI's threadpool share this connection.
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(str(self.db_path) if self.db_path else ":memory:", check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    @property
    def clock(self) -> Clock:
        return self._clock

    def now(self) -> float:
        return float(self._clock())

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Explicit SQLite transaction, holding the store lock for its duration."""
        with self._lock:
            self._conn.execute(f"BEGIN {mode};")
            try:
                yield
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              id TEXT PRIMARY KEY,
              type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              status TEXT NOT NULL
                CHECK (status IN ('queued', 'running', 'succeeded', 'failed', 'canceled')),
              progress REAL NOT NULL DEFAULT 0,
              result_json TEXT,
              error TEXT,
              error_code TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              started_at REAL,
              ended_at REAL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              action TEXT NOT NULL,
              entity TEXT NOT NULL,
              entity_id TEXT NOT NULL,
              detail_json TEXT NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity, entity_id, created_at);")
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

        current = self._get_schema_version()
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({SCHEMA_VERSION}).")

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    # --- Jobs
    def insert(self, job_type: str, payload: dict[str, Any] | None = None) -> JobRecord:
        job_id = _new_id("job")
        ts = self.now()
        payload = dict(payload or {})
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO jobs(id, type, payload_json, status, progress, created_at, updated_at)
                VALUES(?, ?, ?, 'queued', 0, ?, ?);
                """,
                (job_id, job_type, _json_dumps(payload), ts, ts),
            )
            self._conn.commit()
        return JobRecord(
            job_id=job_id,
            type=job_type,
            payload=payload,
            status="queued",
            progress=0.0,
            result=None,
            error=None,
            error_code=None,
            created_at=ts,
            updated_at=ts,
            started_at=None,
            ended_at=None,
        )

    def find(self, job_id: str) -> JobRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ? LIMIT 1;",
                (job_id,),
            ).fetchone()
        return JobRecord.from_row(row) if row is not None else None

    def get(self, job_id: str) -> JobRecord:
        job = self.find(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def update_status(
        self,
        job_id: str,
        status: str,
        *,
        progress: float | None = None,
        result: Any = None,
        error: str | None = None,
        error_code: str | None = None,
        expect: Iterable[str] | None = None,
    ) -> bool:
        """Write a status transition; returns False when the `expect` guard did not match.

        Unknown ids raise NotFoundError. `started_at` / `ended_at` are only set once.
        """
        if status not in JOB_STATUSES:
            raise ValueError(f"Invalid job status: {status!r}")
        ts = self.now()
        started_at = ts if status == "running" else None
        ended_at = ts if status in TERMINAL_STATUSES else None

        where = ["id = ?"]
        params: list[Any] = [
            status,
            None if progress is None else max(0.0, min(100.0, float(progress))),
            None if result is None else _json_dumps(result),
            error,
            error_code,
            ts,
            started_at,
            ended_at,
            job_id,
        ]
        if expect is not None:
            expected = sorted(set(expect))
            where.append(f"status IN ({', '.join('?' for _ in expected)})")
            params.extend(expected)

        with self._lock:
            cur = self._conn.execute(
                f"""
                UPDATE jobs
                SET
                  status = ?,
                  progress = COALESCE(?, progress),
                  result_json = COALESCE(?, result_json),
                  error = COALESCE(?, error),
                  error_code = COALESCE(?, error_code),
                  updated_at = ?,
                  started_at = COALESCE(started_at, ?),
                  ended_at = COALESCE(ended_at, ?)
                WHERE {" AND ".join(where)};
                """,
                params,
            )
            self._conn.commit()
            if cur.rowcount == 1:
                return True
            exists = self._conn.execute("SELECT 1 FROM jobs WHERE id = ? LIMIT 1;", (job_id,)).fetchone()
        if exists is None:
            raise NotFoundError(job_id)
        return False

    def update_progress(self, job_id: str, progress: float) -> bool:
        pct = max(0.0, min(100.0, float(progress)))
        with self._lock:
            cur = self._conn.execute(
                "UPDATE jobs SET progress = ?, updated_at = ? WHERE id = ? AND status = 'running';",
                (pct, self.now(), job_id),
            )
            self._conn.commit()
            if cur.rowcount == 1:
                return True
            exists = self._conn.execute("SELECT 1 FROM jobs WHERE id = ? LIMIT 1;", (job_id,)).fetchone()
        if exists is None:
            raise NotFoundError(job_id)
        return False

    def list_by_status(self, status: str, *, limit: int | None = None) -> list[JobRecord]:
        sql = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC"
        params: list[Any] = [status]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(sql + ";", params).fetchall()
        return [JobRecord.from_row(r) for r in rows]

    def list_page(
        self,
        *,
        statuses: list[str] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        cursor: tuple[float, str] | None = None,
    ) -> dict[str, Any]:
        """Oldest-first page of jobs; `next_cursor` is `(created_at, id)` of the last item or None."""
        where: list[str] = []
        params: list[Any] = []
        if statuses:
            where.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if job_type:
            where.append("type = ?")
            params.append(job_type)
        if cursor is not None:
            where.append("(created_at > ? OR (created_at = ? AND id > ?))")
            params.extend([float(cursor[0]), float(cursor[0]), str(cursor[1])])
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                {where_sql}
                ORDER BY created_at ASC, id ASC
                LIMIT ?;
                """,
                [*params, int(limit) + 1],
            ).fetchall()

        items = [JobRecord.from_row(r) for r in rows[: int(limit)]]
        next_cursor = None
        if len(rows) > int(limit) and items:
            last = items[-1]
            next_cursor = (last.created_at, last.job_id)
        return {"items": items, "next_cursor": next_cursor}

    def count_by_status(self) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
            ).fetchall()
        counts = {s: 0 for s in JOB_STATUSES}
        for r in rows:
            counts[str(r["status"])] = int(r["n"])
        return counts

    # --- Reconcile (staleness recovery)
    def fail_stale_running(self, *, older_than_s: float, reason: str = "Job timed out (stale cleanup)") -> list[str]:
        """Mark 'running' jobs not updated within `older_than_s` as failed.

        This is the only recovery path for jobs orphaned by an unclean exit.
        Returns the ids that were reconciled.
        """
        ts = self.now()
        cutoff = ts - float(older_than_s)
        with self.transaction():
            rows = self._conn.execute(
                "SELECT id FROM jobs WHERE status = 'running' AND updated_at < ? ORDER BY created_at ASC, rowid ASC;",
                (cutoff,),
            ).fetchall()
            reconciled: list[str] = []
            for r in rows:
                job_id = str(r["id"])
                cur = self._conn.execute(
                    """
                    UPDATE jobs
                    SET
                      status = 'failed',
                      error = ?,
                      error_code = 'stale_timeout',
                      updated_at = ?,
                      ended_at = COALESCE(ended_at, ?)
                    WHERE id = ? AND status = 'running';
                    """,
                    (reason, ts, ts, job_id),
                )
                if cur.rowcount != 1:
                    continue
                self._conn.execute(
                    """
                    INSERT INTO audit_log(action, entity, entity_id, detail_json, created_at)
                    VALUES(?, ?, ?, ?, ?);
                    """,
                    ("job_stale_timeout", "job", job_id, _json_dumps({"error": reason}), ts),
                )
                reconciled.append(job_id)
        return reconciled

    def purge_terminal(self, *, older_than_s: float) -> int:
        """Delete terminal jobs created before `now - older_than_s` (retention)."""
        cutoff = self.now() - float(older_than_s)
        with self._lock:
            cur = self._conn.execute(
                """
                DELETE FROM jobs
                WHERE created_at < ? AND status IN ('succeeded', 'failed', 'canceled');
                """,
                (cutoff,),
            )
            self._conn.commit()
        return int(cur.rowcount)

    # --- Audit log
    def append_audit(
        self,
        action: str,
        *,
        entity: str = "job",
        entity_id: str,
        detail: dict[str, Any] | None = None,
    ) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO audit_log(action, entity, entity_id, detail_json, created_at)
                VALUES(?, ?, ?, ?, ?);
                """,
                (action, entity, entity_id, _json_dumps(detail or {}), self.now()),
            )
            self._conn.commit()
        return int(cur.lastrowid)

    def list_audit(self, entity_id: str | None = None, *, action: str | None = None) -> list[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []
        if entity_id is not None:
            where.append("entity_id = ?")
            params.append(entity_id)
        if action is not None:
            where.append("action = ?")
            params.append(action)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT id, action, entity, entity_id, detail_json, created_at
                FROM audit_log
                {where_sql}
                ORDER BY created_at ASC, id ASC;
                """,
                params,
            ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "action": r["action"],
                "entity": r["entity"],
                "entity_id": r["entity_id"],
                "detail": json.loads(r["detail_json"]),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]
