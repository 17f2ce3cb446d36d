"""
Attempt Ledger
~~~~~~~~~~~~~~

SQLite persistence for deployment attempts and backup records.

The ledger is also the serialization guard: :meth:`AttemptLedger.begin`
takes a write lock (``BEGIN IMMEDIATE``) and refuses to open a second
``pending`` attempt for the same service.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from swapguard.core.models import BackupRecord, DeploymentAttempt
from swapguard.core.status import AttemptStatus, BootstrapState, RecordKind
from swapguard.exceptions import DeploymentInProgressError, LedgerError

__all__ = ["AttemptLedger"]

logger = logging.getLogger(__name__)

_SCHEMA = (
    """\
CREATE TABLE IF NOT EXISTS attempts (
    id               TEXT PRIMARY KEY,
    service          TEXT NOT NULL,
    status           TEXT NOT NULL,
    started_at       TEXT NOT NULL,
    finished_at      TEXT,
    bootstrap_state  TEXT NOT NULL DEFAULT 'unknown',
    message          TEXT NOT NULL DEFAULT ''
)
""",
    """\
CREATE TABLE IF NOT EXISTS records (
    archive     TEXT PRIMARY KEY,
    attempt_id  TEXT NOT NULL,
    kind        TEXT NOT NULL,
    source      TEXT NOT NULL,
    created_at  TEXT NOT NULL
)
""",
    "CREATE INDEX IF NOT EXISTS idx_attempts_service ON attempts (service, status)",
)

_ATTEMPT_COLUMNS = (
    "id, service, status, started_at, finished_at, bootstrap_state, message"
)


def _row_to_attempt(row: tuple) -> DeploymentAttempt:
    return DeploymentAttempt(
        id=row[0],
        service=row[1],
        status=AttemptStatus(row[2]),
        started_at=datetime.fromisoformat(row[3]),
        finished_at=datetime.fromisoformat(row[4]) if row[4] else None,
        bootstrap_state=BootstrapState(row[5]),
        message=row[6],
    )


def _row_to_record(row: tuple) -> BackupRecord:
    return BackupRecord(
        archive=row[0],
        attempt_id=row[1],
        kind=RecordKind(row[2]),
        source=row[3],
        created_at=datetime.fromisoformat(row[4]),
    )


class AttemptLedger:
    """
    Durable record of deploy attempts and their backup archives.

    Every call opens its own short-lived connection, so a ledger object
    can be shared freely and the file can be inspected while a deploy
    is running.
    """

    def __init__(self, db_path: str, busy_timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> str:
        return self._db_path

    def _init_db(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self._db_path,
                timeout=self._busy_timeout,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise LedgerError(f"Cannot open ledger {self._db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise LedgerError(f"Ledger operation failed: {exc}") from exc
        finally:
            conn.close()

    # ── Attempts ─────────────────────────────────────────────────

    def begin(self, service: str) -> DeploymentAttempt:
        """
        Open a new pending attempt for ``service``.

        Raises:
            DeploymentInProgressError: If another attempt is still pending.
        """
        attempt = DeploymentAttempt(service=service)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT id FROM attempts WHERE service = ? AND status = ?",
                    (service, AttemptStatus.PENDING.value),
                ).fetchone()
                if row is not None:
                    raise DeploymentInProgressError(
                        f"Attempt {row[0]} for service {service!r} is still pending",
                        service=service,
                        attempt_id=row[0],
                    )
                conn.execute(
                    f"INSERT INTO attempts ({_ATTEMPT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        attempt.id,
                        attempt.service,
                        attempt.status.value,
                        attempt.started_at.isoformat(),
                        None,
                        attempt.bootstrap_state.value,
                        attempt.message,
                    ),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        logger.info("Opened deploy attempt %s for %s", attempt.id, service)
        return attempt

    def save(self, attempt: DeploymentAttempt) -> None:
        """Persist the mutable fields of an attempt."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE attempts SET status = ?, finished_at = ?, "
                "bootstrap_state = ?, message = ? WHERE id = ?",
                (
                    attempt.status.value,
                    attempt.finished_at.isoformat() if attempt.finished_at else None,
                    attempt.bootstrap_state.value,
                    attempt.message,
                    attempt.id,
                ),
            )

    def finish(
        self,
        attempt: DeploymentAttempt,
        status: AttemptStatus,
        message: str = "",
    ) -> DeploymentAttempt:
        """Move an attempt to a terminal status and persist it."""
        if not status.is_terminal():
            raise ValueError(f"{status} is not a terminal status")
        if attempt.status.is_terminal():
            raise LedgerError(
                f"Attempt {attempt.id} is already {attempt.status.value}"
            )
        attempt.status = status
        attempt.message = message
        attempt.finished_at = datetime.now(UTC)
        self.save(attempt)
        return attempt

    def get(self, attempt_id: str) -> DeploymentAttempt | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE id = ?",
                (attempt_id,),
            ).fetchone()
        return _row_to_attempt(row) if row else None

    def history(self, service: str, limit: int = 10) -> list[DeploymentAttempt]:
        """Return the most recent attempts for a service, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE service = ? "
                "ORDER BY started_at DESC LIMIT ?",
                (service, limit),
            ).fetchall()
        return [_row_to_attempt(row) for row in rows]

    def pending(self, service: str) -> DeploymentAttempt | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ATTEMPT_COLUMNS} FROM attempts "
                "WHERE service = ? AND status = ?",
                (service, AttemptStatus.PENDING.value),
            ).fetchone()
        return _row_to_attempt(row) if row else None

    def has_committed(self, service: str) -> bool:
        """Return True if any attempt for the service was ever committed."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM attempts WHERE service = ? AND status = ? LIMIT 1",
                (service, AttemptStatus.COMMITTED.value),
            ).fetchone()
        return row is not None

    def release_stale(self, service: str) -> list[str]:
        """
        Mark pending attempts left behind by a killed process as unrecoverable.

        Returns:
            The ids of the attempts that were released.
        """
        now = datetime.now(UTC).isoformat()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                ids = [
                    row[0]
                    for row in conn.execute(
                        "SELECT id FROM attempts WHERE service = ? AND status = ?",
                        (service, AttemptStatus.PENDING.value),
                    ).fetchall()
                ]
                conn.execute(
                    "UPDATE attempts SET status = ?, finished_at = ?, message = ? "
                    "WHERE service = ? AND status = ?",
                    (
                        AttemptStatus.FAILED_UNRECOVERABLE.value,
                        now,
                        "released by operator",
                        service,
                        AttemptStatus.PENDING.value,
                    ),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        for attempt_id in ids:
            logger.warning("Released stale attempt %s for %s", attempt_id, service)
        return ids

    # ── Backup records ───────────────────────────────────────────

    def add_record(self, record: BackupRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO records "
                "(archive, attempt_id, kind, source, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    record.archive,
                    record.attempt_id,
                    record.kind.value,
                    record.source,
                    record.created_at.isoformat(),
                ),
            )

    def has_record(self, archive: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM records WHERE archive = ?", (archive,)
            ).fetchone()
        return row is not None

    def records(self, attempt_id: str) -> list[BackupRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT archive, attempt_id, kind, source, created_at "
                "FROM records WHERE attempt_id = ? ORDER BY created_at",
                (attempt_id,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def remove_record(self, archive: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM records WHERE archive = ?", (archive,))
