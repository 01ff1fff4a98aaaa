# src/flowcore/storage/repo.py
from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from typing import Protocol

import pydantic

from flowcore.domain.errors import NotFoundError
from flowcore.domain.models import JobSnapshot
from flowcore.logging import get_logger

from .db import SQLiteDB, begin_immediate, commit, rollback

_LOG = get_logger(__name__)


class CheckpointStore(Protocol):
    """Persistence transport for job checkpoints."""

    def save_checkpoint(self, job_id: str, snapshot: JobSnapshot) -> None: ...

    def load_checkpoint(self, job_id: str) -> JobSnapshot: ...

    def list_checkpoints(self) -> list[JobSnapshot]: ...

    def delete_checkpoint(self, job_id: str) -> None: ...


@dataclass
class CheckpointRepo:
    """
    SQL access for the checkpoints table over one connection.

    Saves are upserts inside BEGIN IMMEDIATE, so a checkpoint row is always
    a complete snapshot.
    """
    conn: sqlite3.Connection

    def upsert(self, snapshot: JobSnapshot) -> None:
        try:
            begin_immediate(self.conn)
            self.conn.execute(
                """
                INSERT INTO checkpoints(job_id, status, progress, generation, snapshot, created_at, saved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                  status=excluded.status,
                  progress=excluded.progress,
                  generation=excluded.generation,
                  snapshot=excluded.snapshot,
                  saved_at=excluded.saved_at;
                """,
                (
                    snapshot.job_id,
                    snapshot.status.value,
                    snapshot.progress,
                    snapshot.generation,
                    snapshot.model_dump_json(),
                    snapshot.created_at,
                    snapshot.saved_at,
                ),
            )
            commit(self.conn)
        except Exception:
            rollback(self.conn)
            raise

    def get(self, job_id: str) -> JobSnapshot:
        row = self.conn.execute(
            "SELECT snapshot FROM checkpoints WHERE job_id = ?;",
            (job_id,),
        ).fetchone()
        if not row:
            raise NotFoundError(f"Checkpoint not found: {job_id}", details={"job_id": job_id})
        return JobSnapshot.model_validate_json(row["snapshot"])

    def list_all(self) -> list[JobSnapshot]:
        rows = self.conn.execute(
            "SELECT job_id, snapshot FROM checkpoints ORDER BY created_at ASC, job_id ASC;"
        ).fetchall()
        snapshots: list[JobSnapshot] = []
        for row in rows:
            try:
                snapshots.append(JobSnapshot.model_validate_json(row["snapshot"]))
            except pydantic.ValidationError as e:
                _LOG.warning("Skipping unreadable checkpoint %s: %s", row["job_id"], e)
        return snapshots

    def delete(self, job_id: str) -> bool:
        try:
            begin_immediate(self.conn)
            cur = self.conn.execute("DELETE FROM checkpoints WHERE job_id = ?;", (job_id,))
            commit(self.conn)
        except Exception:
            rollback(self.conn)
            raise
        return cur.rowcount > 0


class SQLiteCheckpointStore:
    """CheckpointStore over SQLite; opens one connection per call."""

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def _with_repo(self, fn):
        conn = self._db.connect()
        try:
            return fn(CheckpointRepo(conn))
        finally:
            conn.close()

    def save_checkpoint(self, job_id: str, snapshot: JobSnapshot) -> None:
        if snapshot.job_id != job_id:
            raise ValueError(f"Snapshot belongs to {snapshot.job_id}, not {job_id}")
        self._with_repo(lambda repo: repo.upsert(snapshot))

    def load_checkpoint(self, job_id: str) -> JobSnapshot:
        return self._with_repo(lambda repo: repo.get(job_id))

    def list_checkpoints(self) -> list[JobSnapshot]:
        return self._with_repo(lambda repo: repo.list_all())

    def delete_checkpoint(self, job_id: str) -> None:
        if not self._with_repo(lambda repo: repo.delete(job_id)):
            _LOG.debug("No checkpoint to delete for job %s", job_id)


class InMemoryCheckpointStore:
    """CheckpointStore kept in process memory; snapshots are copied in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, JobSnapshot] = {}

    def save_checkpoint(self, job_id: str, snapshot: JobSnapshot) -> None:
        if snapshot.job_id != job_id:
            raise ValueError(f"Snapshot belongs to {snapshot.job_id}, not {job_id}")
        with self._lock:
            self._snapshots[job_id] = snapshot.model_copy(deep=True)

    def load_checkpoint(self, job_id: str) -> JobSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(job_id)
        if snapshot is None:
            raise NotFoundError(f"Checkpoint not found: {job_id}", details={"job_id": job_id})
        return snapshot.model_copy(deep=True)

    def list_checkpoints(self) -> list[JobSnapshot]:
        with self._lock:
            snapshots = [s.model_copy(deep=True) for s in self._snapshots.values()]
        snapshots.sort(key=lambda s: (s.created_at, s.job_id))
        return snapshots

    def delete_checkpoint(self, job_id: str) -> None:
        with self._lock:
            self._snapshots.pop(job_id, None)
