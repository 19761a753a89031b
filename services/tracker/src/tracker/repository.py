from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso, split_csv

from tracker.errors import ValidationError
from tracker.models import (
    APPLICATION_STATUSES,
    DEFAULT_STATUS,
    Application,
    ApplicationCreate,
    ApplicationDetail,
    ApplicationUpdate,
)

LOGGER = logging.getLogger("tracker.repository")

APPLICATION_COLUMNS = (
    "company_name",
    "job_title",
    "location",
    "source_url",
    "status",
    "apply_time",
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    company_name TEXT NOT NULL,
    job_title TEXT,
    location TEXT,
    source_url TEXT,
    status TEXT NOT NULL DEFAULT 'applied'
        CHECK (status IN ('applied', 'interview', 'rejected', 'closed')),
    apply_time TEXT,
    create_time TEXT NOT NULL,
    update_time TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS skills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    is_soft_skill INTEGER NOT NULL DEFAULT 0 CHECK (is_soft_skill IN (0, 1)),
    create_time TEXT NOT NULL,
    update_time TEXT NOT NULL,
    UNIQUE (name, is_soft_skill)
);

CREATE TABLE IF NOT EXISTS application_skills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    application_id INTEGER NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
    skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    create_time TEXT NOT NULL,
    update_time TEXT NOT NULL,
    UNIQUE (application_id, skill_id)
);

CREATE INDEX IF NOT EXISTS idx_applications_status_create_time
    ON applications(status, create_time);

CREATE INDEX IF NOT EXISTS idx_application_skills_application_id
    ON application_skills(application_id);

CREATE INDEX IF NOT EXISTS idx_application_skills_skill_id
    ON application_skills(skill_id);

CREATE TRIGGER IF NOT EXISTS trg_applications_update_time
AFTER UPDATE ON applications
FOR EACH ROW WHEN NEW.update_time = OLD.update_time
BEGIN
    UPDATE applications
    SET update_time = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')
    WHERE id = NEW.id;
END;

CREATE TRIGGER IF NOT EXISTS trg_skills_update_time
AFTER UPDATE ON skills
FOR EACH ROW WHEN NEW.update_time = OLD.update_time
BEGIN
    UPDATE skills
    SET update_time = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')
    WHERE id = NEW.id;
END;

CREATE TRIGGER IF NOT EXISTS trg_application_skills_update_time
AFTER UPDATE ON application_skills
FOR EACH ROW WHEN NEW.update_time = OLD.update_time
BEGIN
    UPDATE application_skills
    SET update_time = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')
    WHERE id = NEW.id;
END;
"""


def _clean_optional(value: str | None) -> str | None:
    return (value or "").strip() or None


class ApplicationRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(SCHEMA_SQL)
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def create_application(self, payload: ApplicationCreate) -> Application:
        company_name = payload.company_name.strip()
        if not company_name:
            raise ValidationError("companyName is required")
        status = payload.status or DEFAULT_STATUS
        self._check_status(status)

        with self._lock:
            now = now_utc_iso()
            try:
                cursor = self.connection.execute(
                    """
                    INSERT INTO applications (
                        company_name,
                        job_title,
                        location,
                        source_url,
                        status,
                        apply_time,
                        create_time,
                        update_time
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        company_name,
                        _clean_optional(payload.job_title),
                        _clean_optional(payload.location),
                        _clean_optional(payload.source_url),
                        status,
                        _clean_optional(payload.apply_time),
                        now,
                        now,
                    ),
                )
                application_id = int(cursor.lastrowid)
                if payload.soft_skills is not None:
                    self._reconcile(application_id, split_csv(payload.soft_skills), soft=True)
                if payload.skills is not None:
                    self._reconcile(application_id, split_csv(payload.skills), soft=False)
                self.connection.commit()
            except Exception:
                self.connection.rollback()
                raise
            return self._get_application_or_fail(application_id)

    def get_application(self, application_id: int) -> Application | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM applications WHERE id = ?",
                (application_id,),
            ).fetchone()
            if row is None:
                return None
            return Application(**dict(row))

    def get_application_detail(self, application_id: int) -> ApplicationDetail | None:
        with self._lock:
            application = self.get_application(application_id)
            if application is None:
                return None
            rows = self.connection.execute(
                """
                SELECT s.name AS name, s.is_soft_skill AS is_soft_skill
                FROM application_skills l
                JOIN skills s ON s.id = l.skill_id
                WHERE l.application_id = ?
                ORDER BY s.name
                """,
                (application_id,),
            ).fetchall()
            return ApplicationDetail(
                **application.model_dump(),
                soft_skills=[row["name"] for row in rows if row["is_soft_skill"]],
                skills=[row["name"] for row in rows if not row["is_soft_skill"]],
            )

    def list_applications(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Application]:
        with self._lock:
            query = "SELECT * FROM applications"
            params: list[Any] = []
            if status is not None:
                query += " WHERE status = ?"
                params.append(status)
            query += " ORDER BY create_time DESC, id DESC"
            if limit is not None or offset is not None:
                # SQLite only accepts OFFSET after a LIMIT; -1 means unbounded.
                query += " LIMIT ? OFFSET ?"
                params.extend([limit if limit is not None else -1, offset or 0])
            cursor = self.connection.execute(query, tuple(params))
            return [Application(**dict(row)) for row in cursor.fetchall()]

    def update_application(
        self,
        application_id: int,
        payload: ApplicationUpdate,
    ) -> Application | None:
        changes = payload.model_dump(exclude_unset=True)
        assignments: dict[str, Any] = {}
        for column in APPLICATION_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if column == "company_name":
                value = (value or "").strip()
                if not value:
                    raise ValidationError("companyName must not be empty")
            elif column == "status":
                self._check_status(value)
            else:
                value = _clean_optional(value)
            assignments[column] = value

        soft_skills = changes.get("soft_skills")
        skills = changes.get("skills")
        reconcile_soft = "soft_skills" in changes
        reconcile_required = "skills" in changes

        with self._lock:
            existing = self.get_application(application_id)
            if existing is None:
                return None
            if not assignments and not reconcile_soft and not reconcile_required:
                return existing

            assignments["update_time"] = now_utc_iso()
            set_clause = ", ".join(f"{column} = ?" for column in assignments)
            try:
                self.connection.execute(
                    f"UPDATE applications SET {set_clause} WHERE id = ?",
                    (*assignments.values(), application_id),
                )
                if reconcile_soft:
                    self._reconcile(application_id, split_csv(soft_skills), soft=True)
                if reconcile_required:
                    self._reconcile(application_id, split_csv(skills), soft=False)
                self.connection.commit()
            except Exception:
                self.connection.rollback()
                raise
            return self._get_application_or_fail(application_id)

    def delete_application(self, application_id: int) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM applications WHERE id = ?",
                (application_id,),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def reconcile_skills(
        self,
        application_id: int,
        names: list[str] | set[str],
        *,
        soft: bool,
    ) -> list[int]:
        """Link an application to exactly ``names`` within one skill category.

        Missing skills are created, existing ones reused. Every previous link in
        the category is removed first, so an empty ``names`` clears it.
        """
        with self._lock:
            try:
                skill_ids = self._reconcile(application_id, list(dict.fromkeys(names)), soft=soft)
                self.connection.commit()
            except Exception:
                self.connection.rollback()
                raise
            return skill_ids

    def linked_skill_ids(self, application_id: int, *, soft: bool) -> set[int]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT l.skill_id AS skill_id
                FROM application_skills l
                JOIN skills s ON s.id = l.skill_id
                WHERE l.application_id = ? AND s.is_soft_skill = ?
                """,
                (application_id, int(soft)),
            ).fetchall()
            return {int(row["skill_id"]) for row in rows}

    def _reconcile(self, application_id: int, names: list[str], *, soft: bool) -> list[int]:
        category = int(soft)
        skill_ids = self._resolve_skill_ids(names, category)
        now = now_utc_iso()
        self.connection.execute(
            """
            DELETE FROM application_skills
            WHERE application_id = ?
              AND skill_id IN (SELECT id FROM skills WHERE is_soft_skill = ?)
            """,
            (application_id, category),
        )
        self.connection.executemany(
            """
            INSERT OR IGNORE INTO application_skills (
                application_id,
                skill_id,
                create_time,
                update_time
            )
            VALUES (?, ?, ?, ?)
            """,
            [(application_id, skill_id, now, now) for skill_id in skill_ids],
        )
        LOGGER.debug(
            json.dumps(
                {
                    "event": "skills_reconciled",
                    "application_id": application_id,
                    "soft": soft,
                    "linked": len(skill_ids),
                }
            )
        )
        return skill_ids

    def _resolve_skill_ids(self, names: list[str], category: int) -> list[int]:
        if not names:
            return []
        existing = self._select_skill_ids(names, category)
        missing = [name for name in names if name not in existing]
        if missing:
            now = now_utc_iso()
            # A concurrent writer may insert the same name first; the
            # uniqueness constraint absorbs it and the re-select picks it up.
            self.connection.executemany(
                """
                INSERT INTO skills (name, is_soft_skill, create_time, update_time)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name, is_soft_skill) DO NOTHING
                """,
                [(name, category, now, now) for name in missing],
            )
            existing.update(self._select_skill_ids(missing, category))
        return [existing[name] for name in names]

    def _select_skill_ids(self, names: list[str], category: int) -> dict[str, int]:
        placeholders = ", ".join("?" for _ in names)
        rows = self.connection.execute(
            f"""
            SELECT id, name
            FROM skills
            WHERE is_soft_skill = ? AND name IN ({placeholders})
            """,
            (category, *names),
        ).fetchall()
        return {row["name"]: int(row["id"]) for row in rows}

    def _get_application_or_fail(self, application_id: int) -> Application:
        application = self.get_application(application_id)
        if application is None:
            raise RuntimeError(f"Application {application_id} vanished after write")
        return application

    @staticmethod
    def _check_status(status: str | None) -> None:
        if status not in APPLICATION_STATUSES:
            raise ValidationError(f"Invalid status: {status!r}")
