from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import json
import sqlite3
import threading

from roadwatch.config import get_db_path
from roadwatch.core.types import (
    Actor,
    Category,
    Report,
    Role,
    actor_from_dict,
    report_from_dict,
    report_to_dict,
    utc_now,
)
from roadwatch.errors import ConcurrentUpdate
from roadwatch.storage.base import ReportStore


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS actors (
        actor_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        specialization TEXT,
        name TEXT NOT NULL DEFAULT '',
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reports (
        report_id TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        state TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        assignee_id TEXT,
        category TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reports_owner ON reports(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_reports_assignee ON reports(assignee_id)",
    "CREATE INDEX IF NOT EXISTS idx_reports_state ON reports(state)",
)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SQLiteReportStore(ReportStore):
    def __init__(self, db_path: Optional[str] = None):
        self._db_path = db_path or get_db_path()
        self._local = threading.local()
        self.init_db()

    @property
    def name(self) -> str:
        return "sqlite"

    def _open(self) -> sqlite3.Connection:
        db_file = Path(self._db_path)
        db_file.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_file))
        conn.row_factory = sqlite3.Row
        return conn

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    def init_db(self) -> None:
        with self.connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.commit()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield active["conn"]
            finally:
                active["depth"] -= 1
            return

        conn = self._open()
        conn.execute("BEGIN IMMEDIATE")
        self._local.tx_state = {"conn": conn, "depth": 1}
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.tx_state = None
            conn.close()

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
            return dict(row) if row else None

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(query, tuple(params)).fetchall()]

    @staticmethod
    def _row_to_actor(row: Dict[str, Any]) -> Actor:
        return actor_from_dict(
            {
                "id": row["actor_id"],
                "role": row["role"],
                "specialization": row.get("specialization"),
                "name": row.get("name") or "",
            }
        )

    def load_actor(self, actor_id: str) -> Optional[Actor]:
        row = self._fetchone("SELECT * FROM actors WHERE actor_id = ?", (actor_id,))
        return self._row_to_actor(row) if row else None

    def save_actor(self, actor: Actor) -> Actor:
        specialization = actor.specialization.value if isinstance(actor.specialization, Category) else None
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO actors (actor_id, role, specialization, name, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(actor_id) DO UPDATE SET
                    role = excluded.role,
                    specialization = excluded.specialization,
                    name = excluded.name,
                    updated_at = excluded.updated_at
                """,
                (actor.id, actor.role.value, specialization, actor.name, utc_now().isoformat()),
            )
        return actor

    def list_actors(self, role: Optional[Role] = None) -> List[Actor]:
        if role is None:
            rows = self._fetchall("SELECT * FROM actors ORDER BY actor_id")
        else:
            rows = self._fetchall("SELECT * FROM actors WHERE role = ? ORDER BY actor_id", (role.value,))
        return [self._row_to_actor(row) for row in rows]

    def load_report(self, report_id: str) -> Optional[Report]:
        row = self._fetchone("SELECT payload_json, version FROM reports WHERE report_id = ?", (report_id,))
        if not row:
            return None
        payload = json.loads(row["payload_json"])
        payload["version"] = int(row["version"])
        return report_from_dict(payload)

    def save_report(self, report: Report) -> Report:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT version FROM reports WHERE report_id = ?",
                (report.id,),
            ).fetchone()
            stored_version = int(row["version"]) if row else 0
            if report.version != stored_version:
                raise ConcurrentUpdate(
                    f"report {report.id} changed concurrently "
                    f"(expected version {report.version}, found {stored_version})"
                )
            saved = replace(report, version=stored_version + 1)
            payload = report_to_dict(saved)
            params = (
                saved.version,
                saved.state.value,
                saved.owner,
                saved.assignee,
                saved.category.value,
                _json_dumps(payload),
                payload["created_at"],
                payload["updated_at"],
                saved.id,
            )
            if row:
                conn.execute(
                    """
                    UPDATE reports
                    SET version = ?, state = ?, owner_id = ?, assignee_id = ?, category = ?,
                        payload_json = ?, created_at = ?, updated_at = ?
                    WHERE report_id = ?
                    """,
                    params,
                )
            else:
                conn.execute(
                    """
                    INSERT INTO reports (
                        version, state, owner_id, assignee_id, category,
                        payload_json, created_at, updated_at, report_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
        return saved

    def delete_report(self, report_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM reports WHERE report_id = ?", (report_id,))
            return cur.rowcount > 0

    def list_reports(self) -> List[Report]:
        rows = self._fetchall("SELECT payload_json, version FROM reports ORDER BY created_at, report_id")
        reports: List[Report] = []
        for row in rows:
            payload = json.loads(row["payload_json"])
            payload["version"] = int(row["version"])
            reports.append(report_from_dict(payload))
        return reports
