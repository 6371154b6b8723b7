from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Sequence

from .models import (
    Checkpoint,
    CheckpointDetail,
    CheckpointStatus,
    Equipment,
    EquipmentStatus,
    EquipmentType,
    Inspection,
    InspectionDetail,
    InspectionStatus,
    InspectionTemplate,
    Media,
    MediaStorage,
    MediaType,
    Section,
    SectionBlueprint,
    SectionDetail,
    SessionToken,
    TemplateCheckpoint,
    TemplateSection,
    User,
    UserRole,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
BUSY_TIMEOUT_SECONDS = 10.0


class Database:
    """SQLite backed persistence for the equipment inspection domain."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                PRAGMA foreign_keys = ON;
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS session_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    token TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS equipment (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    type TEXT NOT NULL,
                    model TEXT NOT NULL,
                    serial TEXT NOT NULL UNIQUE,
                    location TEXT NOT NULL,
                    hours_used INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    task_id TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS inspection_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT,
                    equipment_type TEXT NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    requires_freight_id INTEGER NOT NULL DEFAULT 0,
                    parent_template_id INTEGER REFERENCES inspection_templates(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS template_sections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER NOT NULL REFERENCES inspection_templates(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    position INTEGER NOT NULL
                );
                CREATE TABLE IF NOT EXISTS template_checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    section_id INTEGER NOT NULL REFERENCES template_sections(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    critical INTEGER NOT NULL DEFAULT 0,
                    position INTEGER NOT NULL
                );
                CREATE TABLE IF NOT EXISTS inspections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    equipment_id INTEGER NOT NULL REFERENCES equipment(id) ON DELETE CASCADE,
                    technician_id INTEGER NOT NULL REFERENCES users(id),
                    template_id INTEGER REFERENCES inspection_templates(id) ON DELETE SET NULL,
                    status TEXT NOT NULL,
                    task_id TEXT,
                    serial_number TEXT,
                    freight_id TEXT,
                    technician_remarks TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_inspections_one_active
                    ON inspections(equipment_id)
                    WHERE status = 'IN_PROGRESS';
                CREATE TABLE IF NOT EXISTS sections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    inspection_id INTEGER NOT NULL REFERENCES inspections(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    code TEXT NOT NULL,
                    position INTEGER NOT NULL
                );
                CREATE TABLE IF NOT EXISTS checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    section_id INTEGER NOT NULL REFERENCES sections(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    critical INTEGER NOT NULL DEFAULT 0,
                    position INTEGER NOT NULL,
                    status TEXT,
                    notes TEXT,
                    estimated_hours REAL
                );
                CREATE TABLE IF NOT EXISTS media (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    checkpoint_id INTEGER NOT NULL REFERENCES checkpoints(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    storage TEXT NOT NULL,
                    data BLOB,
                    object_key TEXT,
                    filename TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
            """
            )

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.path, timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def session(self) -> Generator[sqlite3.Connection, None, None]:
        with self._connect() as conn:
            yield conn

    @contextmanager
    def transaction(self, *, serializable: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """Explicit multi-statement transaction.

        ``serializable=True`` takes SQLite's write lock up front (``BEGIN
        IMMEDIATE``) so a read-check-then-write sequence cannot interleave with
        another writer doing the same check.
        """
        conn = sqlite3.connect(self.path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("BEGIN IMMEDIATE" if serializable else "BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection]) -> Generator[sqlite3.Connection, None, None]:
        if conn is not None:
            yield conn
            return
        with self.session() as own:
            yield own

    # User operations
    def add_user(self, name: str, email: str, password_hash: str, role: UserRole) -> User:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                "INSERT INTO users (name, email, password_hash, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (name, email, password_hash, role.value, _format_datetime(now)),
            )
            user_id = cursor.lastrowid
        return User(id=user_id, name=name, email=email, password_hash=password_hash, role=role, created_at=now)

    def get_user(self, user_id: int) -> Optional[User]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self) -> List[User]:
        with self.session() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
        return [_row_to_user(row) for row in rows]

    def list_users_by_roles(self, roles: Iterable[UserRole]) -> List[User]:
        role_list = list(roles)
        if not role_list:
            return []
        placeholders = ",".join("?" for _ in role_list)
        with self.session() as conn:
            rows = conn.execute(
                f"SELECT * FROM users WHERE role IN ({placeholders}) ORDER BY name",
                tuple(role.value for role in role_list),
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user(self, user_id: int, *, name: str, email: str, role: UserRole) -> Optional[User]:
        with self.session() as conn:
            conn.execute(
                "UPDATE users SET name = ?, email = ?, role = ? WHERE id = ?",
                (name, email, role.value, user_id),
            )
        return self.get_user(user_id)

    def update_user_password(self, user_id: int, password_hash: str) -> None:
        with self.session() as conn:
            conn.execute("UPDATE users SET password_hash = ? WHERE id = ?", (password_hash, user_id))

    def delete_user_unless_last_admin(self, user_id: int) -> bool:
        """Delete a user; refuse (return False) when it is the only ADMIN."""
        with self.transaction(serializable=True) as conn:
            row = conn.execute("SELECT role FROM users WHERE id = ?", (user_id,)).fetchone()
            if row is None:
                return True
            if row["role"] == UserRole.ADMIN.value:
                admins = conn.execute(
                    "SELECT COUNT(*) FROM users WHERE role = ?", (UserRole.ADMIN.value,)
                ).fetchone()[0]
                if admins <= 1:
                    return False
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return True

    def count_inspections_for_technician(self, user_id: int) -> int:
        with self.session() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM inspections WHERE technician_id = ?", (user_id,)
            ).fetchone()[0]

    # Session operations
    def add_session_token(self, user_id: int, token: str, expires_at: datetime) -> SessionToken:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                "INSERT INTO session_tokens (user_id, token, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (user_id, token, _format_datetime(now), _format_datetime(expires_at)),
            )
            token_id = cursor.lastrowid
        return SessionToken(id=token_id, user_id=user_id, token=token, created_at=now, expires_at=expires_at)

    def get_session_token(self, token: str) -> Optional[SessionToken]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM session_tokens WHERE token = ?", (token,)).fetchone()
        return _row_to_session_token(row) if row else None

    def delete_session_token(self, token: str) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM session_tokens WHERE token = ?", (token,))

    # Equipment operations
    def add_equipment(
        self,
        *,
        type: EquipmentType,
        model: str,
        serial: str,
        location: str,
        hours_used: int,
        status: EquipmentStatus,
        task_id: Optional[str] = None,
    ) -> Equipment:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO equipment (type, model, serial, location, hours_used, status, task_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (type.value, model, serial, location, hours_used, status.value, task_id, _format_datetime(now)),
            )
            equipment_id = cursor.lastrowid
        return Equipment(
            id=equipment_id,
            type=type,
            model=model,
            serial=serial,
            location=location,
            hours_used=hours_used,
            status=status,
            created_at=now,
            task_id=task_id,
        )

    def get_equipment(self, equipment_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Equipment]:
        with self._use(conn) as active:
            row = active.execute("SELECT * FROM equipment WHERE id = ?", (equipment_id,)).fetchone()
        return _row_to_equipment(row) if row else None

    def get_equipment_by_serial(self, serial: str) -> Optional[Equipment]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM equipment WHERE serial = ?", (serial,)).fetchone()
        return _row_to_equipment(row) if row else None

    def find_equipment_like(self, *, type: EquipmentType, model: str, location: str) -> Optional[Equipment]:
        with self.session() as conn:
            row = conn.execute(
                "SELECT * FROM equipment WHERE type = ? AND model = ? AND location = ? LIMIT 1",
                (type.value, model, location),
            ).fetchone()
        return _row_to_equipment(row) if row else None

    def list_equipment(self) -> List[Equipment]:
        with self.session() as conn:
            rows = conn.execute("SELECT * FROM equipment ORDER BY model, serial").fetchall()
        return [_row_to_equipment(row) for row in rows]

    def update_equipment(self, equipment_id: int, **fields: Any) -> Optional[Equipment]:
        if fields:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            values = [value.value if hasattr(value, "value") else value for value in fields.values()]
            with self.session() as conn:
                conn.execute(f"UPDATE equipment SET {assignments} WHERE id = ?", (*values, equipment_id))
        return self.get_equipment(equipment_id)

    def set_equipment_status(
        self,
        equipment_id: int,
        status: EquipmentStatus,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self._use(conn) as active:
            active.execute("UPDATE equipment SET status = ? WHERE id = ?", (status.value, equipment_id))

    def delete_equipment(self, equipment_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM equipment WHERE id = ?", (equipment_id,))

    def count_inspections_for_equipment(self, equipment_id: int) -> int:
        with self.session() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM inspections WHERE equipment_id = ?", (equipment_id,)
            ).fetchone()[0]

    # Template operations
    def add_template(
        self,
        *,
        name: str,
        equipment_type: EquipmentType,
        sections: Sequence[SectionBlueprint],
        description: Optional[str] = None,
        is_default: bool = False,
        requires_freight_id: bool = False,
        parent_template_id: Optional[int] = None,
    ) -> InspectionTemplate:
        now = _utcnow()
        with self.transaction(serializable=True) as conn:
            if is_default:
                conn.execute(
                    "UPDATE inspection_templates SET is_default = 0 WHERE equipment_type = ?",
                    (equipment_type.value,),
                )
            cursor = conn.execute(
                """
                INSERT INTO inspection_templates
                    (name, description, equipment_type, is_default, requires_freight_id, parent_template_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    description,
                    equipment_type.value,
                    int(is_default),
                    int(requires_freight_id),
                    parent_template_id,
                    _format_datetime(now),
                ),
            )
            template_id = cursor.lastrowid
            for blueprint in sections:
                section_cursor = conn.execute(
                    "INSERT INTO template_sections (template_id, name, position) VALUES (?, ?, ?)",
                    (template_id, blueprint.name, blueprint.order),
                )
                for checkpoint in blueprint.checkpoints:
                    conn.execute(
                        "INSERT INTO template_checkpoints (section_id, name, critical, position) VALUES (?, ?, ?, ?)",
                        (section_cursor.lastrowid, checkpoint.name, int(checkpoint.critical), checkpoint.order),
                    )
        template = self.get_template(template_id)
        assert template is not None
        return template

    def get_template(
        self,
        template_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[InspectionTemplate]:
        with self._use(conn) as active:
            row = active.execute("SELECT * FROM inspection_templates WHERE id = ?", (template_id,)).fetchone()
            if not row:
                return None
            return self._load_template_tree(active, row)

    def get_default_template(
        self,
        equipment_type: EquipmentType,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[InspectionTemplate]:
        with self._use(conn) as active:
            row = active.execute(
                """
                SELECT * FROM inspection_templates
                WHERE equipment_type = ? AND is_default = 1
                ORDER BY created_at DESC LIMIT 1
                """,
                (equipment_type.value,),
            ).fetchone()
            if not row:
                return None
            return self._load_template_tree(active, row)

    def list_templates(self, equipment_type: Optional[EquipmentType] = None) -> List[InspectionTemplate]:
        query = "SELECT * FROM inspection_templates"
        params: tuple = ()
        if equipment_type is not None:
            query += " WHERE equipment_type = ?"
            params = (equipment_type.value,)
        query += " ORDER BY created_at DESC, id DESC"
        with self.session() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._load_template_tree(conn, row) for row in rows]

    def update_template(self, template_id: int, **fields: Any) -> Optional[InspectionTemplate]:
        if fields:
            columns = {key: value for key, value in fields.items()}
            if "is_default" in columns:
                columns["is_default"] = int(bool(columns["is_default"]))
            if "requires_freight_id" in columns:
                columns["requires_freight_id"] = int(bool(columns["requires_freight_id"]))
            assignments = ", ".join(f"{column} = ?" for column in columns)
            values = [value.value if hasattr(value, "value") else value for value in columns.values()]
            with self.transaction(serializable=True) as conn:
                if columns.get("is_default"):
                    row = conn.execute(
                        "SELECT equipment_type FROM inspection_templates WHERE id = ?", (template_id,)
                    ).fetchone()
                    equipment_type = columns.get("equipment_type") or (row["equipment_type"] if row else None)
                    if hasattr(equipment_type, "value"):
                        equipment_type = equipment_type.value
                    conn.execute(
                        "UPDATE inspection_templates SET is_default = 0 WHERE equipment_type = ? AND id != ?",
                        (equipment_type, template_id),
                    )
                conn.execute(
                    f"UPDATE inspection_templates SET {assignments} WHERE id = ?",
                    (*values, template_id),
                )
        return self.get_template(template_id)

    def delete_template(self, template_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM inspection_templates WHERE id = ?", (template_id,))

    def add_template_section(self, template_id: int, name: str, order: int) -> TemplateSection:
        with self.session() as conn:
            cursor = conn.execute(
                "INSERT INTO template_sections (template_id, name, position) VALUES (?, ?, ?)",
                (template_id, name, order),
            )
            section_id = cursor.lastrowid
        return TemplateSection(id=section_id, template_id=template_id, name=name, order=order)

    def get_template_section(self, section_id: int) -> Optional[TemplateSection]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM template_sections WHERE id = ?", (section_id,)).fetchone()
            if not row:
                return None
            section = _row_to_template_section(row)
            section.checkpoints = self._load_template_checkpoints(conn, section.id)
        return section

    def update_template_section(self, section_id: int, *, name: str, order: int) -> None:
        with self.session() as conn:
            conn.execute(
                "UPDATE template_sections SET name = ?, position = ? WHERE id = ?",
                (name, order, section_id),
            )

    def delete_template_section(self, section_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM template_sections WHERE id = ?", (section_id,))

    def add_template_checkpoint(self, section_id: int, name: str, critical: bool, order: int) -> TemplateCheckpoint:
        with self.session() as conn:
            cursor = conn.execute(
                "INSERT INTO template_checkpoints (section_id, name, critical, position) VALUES (?, ?, ?, ?)",
                (section_id, name, int(critical), order),
            )
            checkpoint_id = cursor.lastrowid
        return TemplateCheckpoint(id=checkpoint_id, section_id=section_id, name=name, critical=critical, order=order)

    def get_template_checkpoint(self, checkpoint_id: int) -> Optional[TemplateCheckpoint]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM template_checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
        return _row_to_template_checkpoint(row) if row else None

    def update_template_checkpoint(self, checkpoint_id: int, *, name: str, critical: bool, order: int) -> None:
        with self.session() as conn:
            conn.execute(
                "UPDATE template_checkpoints SET name = ?, critical = ?, position = ? WHERE id = ?",
                (name, int(critical), order, checkpoint_id),
            )

    def delete_template_checkpoint(self, checkpoint_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM template_checkpoints WHERE id = ?", (checkpoint_id,))

    def _load_template_tree(self, conn: sqlite3.Connection, row: sqlite3.Row) -> InspectionTemplate:
        template = _row_to_template(row)
        section_rows = conn.execute(
            "SELECT * FROM template_sections WHERE template_id = ? ORDER BY position, id",
            (template.id,),
        ).fetchall()
        for section_row in section_rows:
            section = _row_to_template_section(section_row)
            section.checkpoints = self._load_template_checkpoints(conn, section.id)
            template.sections.append(section)
        return template

    @staticmethod
    def _load_template_checkpoints(conn: sqlite3.Connection, section_id: int) -> List[TemplateCheckpoint]:
        rows = conn.execute(
            "SELECT * FROM template_checkpoints WHERE section_id = ? ORDER BY position, id",
            (section_id,),
        ).fetchall()
        return [_row_to_template_checkpoint(row) for row in rows]

    # Inspection operations
    def add_inspection(
        self,
        conn: sqlite3.Connection,
        *,
        equipment_id: int,
        technician_id: int,
        template_id: Optional[int],
        task_id: Optional[str],
        serial_number: Optional[str],
        freight_id: Optional[str],
    ) -> Inspection:
        now = _utcnow()
        cursor = conn.execute(
            """
            INSERT INTO inspections
                (equipment_id, technician_id, template_id, status, task_id, serial_number, freight_id, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                equipment_id,
                technician_id,
                template_id,
                InspectionStatus.IN_PROGRESS.value,
                task_id,
                serial_number,
                freight_id,
                _format_datetime(now),
            ),
        )
        return Inspection(
            id=cursor.lastrowid,
            equipment_id=equipment_id,
            technician_id=technician_id,
            status=InspectionStatus.IN_PROGRESS,
            started_at=now,
            template_id=template_id,
            task_id=task_id,
            serial_number=serial_number,
            freight_id=freight_id,
        )

    def add_section(self, conn: sqlite3.Connection, *, inspection_id: int, name: str, code: str, order: int) -> Section:
        cursor = conn.execute(
            "INSERT INTO sections (inspection_id, name, code, position) VALUES (?, ?, ?, ?)",
            (inspection_id, name, code, order),
        )
        return Section(id=cursor.lastrowid, inspection_id=inspection_id, name=name, code=code, order=order)

    def add_checkpoint(
        self,
        conn: sqlite3.Connection,
        *,
        section_id: int,
        name: str,
        critical: bool,
        order: int,
    ) -> Checkpoint:
        cursor = conn.execute(
            "INSERT INTO checkpoints (section_id, name, critical, position) VALUES (?, ?, ?, ?)",
            (section_id, name, int(critical), order),
        )
        return Checkpoint(id=cursor.lastrowid, section_id=section_id, name=name, critical=critical, order=order)

    def get_inspection(self, inspection_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Inspection]:
        with self._use(conn) as active:
            row = active.execute("SELECT * FROM inspections WHERE id = ?", (inspection_id,)).fetchone()
        return _row_to_inspection(row) if row else None

    def get_in_progress_inspection(
        self,
        equipment_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Inspection]:
        with self._use(conn) as active:
            row = active.execute(
                "SELECT * FROM inspections WHERE equipment_id = ? AND status = ?",
                (equipment_id, InspectionStatus.IN_PROGRESS.value),
            ).fetchone()
        return _row_to_inspection(row) if row else None

    def list_inspections(
        self,
        *,
        equipment_id: Optional[int] = None,
        technician_id: Optional[int] = None,
        status: Optional[InspectionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Inspection]:
        query = "SELECT * FROM inspections"
        clauses = []
        params: list[Any] = []
        if equipment_id is not None:
            clauses.append("equipment_id = ?")
            params.append(equipment_id)
        if technician_id is not None:
            clauses.append("technician_id = ?")
            params.append(technician_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_inspection(row) for row in rows]

    def get_inspection_detail(self, inspection_id: int) -> Optional[InspectionDetail]:
        """Inspection with equipment, technician and the ordered section/checkpoint/media tree."""
        with self.session() as conn:
            row = conn.execute("SELECT * FROM inspections WHERE id = ?", (inspection_id,)).fetchone()
            if not row:
                return None
            inspection = _row_to_inspection(row)
            equipment_row = conn.execute(
                "SELECT * FROM equipment WHERE id = ?", (inspection.equipment_id,)
            ).fetchone()
            technician_row = conn.execute(
                "SELECT * FROM users WHERE id = ?", (inspection.technician_id,)
            ).fetchone()
            template_name = None
            if inspection.template_id is not None:
                template_row = conn.execute(
                    "SELECT name FROM inspection_templates WHERE id = ?", (inspection.template_id,)
                ).fetchone()
                template_name = template_row["name"] if template_row else None
            section_rows = conn.execute(
                "SELECT * FROM sections WHERE inspection_id = ? ORDER BY position, id",
                (inspection_id,),
            ).fetchall()
            checkpoint_rows = conn.execute(
                """
                SELECT checkpoints.* FROM checkpoints
                JOIN sections ON sections.id = checkpoints.section_id
                WHERE sections.inspection_id = ?
                ORDER BY checkpoints.position, checkpoints.id
                """,
                (inspection_id,),
            ).fetchall()
            media_rows = conn.execute(
                """
                SELECT media.* FROM media
                JOIN checkpoints ON checkpoints.id = media.checkpoint_id
                JOIN sections ON sections.id = checkpoints.section_id
                WHERE sections.inspection_id = ?
                ORDER BY media.created_at, media.id
                """,
                (inspection_id,),
            ).fetchall()
        media_by_checkpoint: dict[int, list[Media]] = {}
        for media_row in media_rows:
            media = _row_to_media(media_row)
            media_by_checkpoint.setdefault(media.checkpoint_id, []).append(media)
        checkpoints_by_section: dict[int, list[CheckpointDetail]] = {}
        for checkpoint_row in checkpoint_rows:
            checkpoint = _row_to_checkpoint(checkpoint_row)
            checkpoints_by_section.setdefault(checkpoint.section_id, []).append(
                CheckpointDetail(checkpoint=checkpoint, media=media_by_checkpoint.get(checkpoint.id, []))
            )
        sections = []
        for section_row in section_rows:
            section = _row_to_section(section_row)
            sections.append(SectionDetail(section=section, checkpoints=checkpoints_by_section.get(section.id, [])))
        return InspectionDetail(
            inspection=inspection,
            equipment=_row_to_equipment(equipment_row),
            technician=_row_to_user(technician_row) if technician_row else None,
            template_name=template_name,
            sections=sections,
        )

    def list_sections(self, inspection_id: int) -> List[Section]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM sections WHERE inspection_id = ? ORDER BY position, id",
                (inspection_id,),
            ).fetchall()
        return [_row_to_section(row) for row in rows]

    def list_checkpoints(self, section_id: int) -> List[Checkpoint]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM checkpoints WHERE section_id = ? ORDER BY position, id",
                (section_id,),
            ).fetchall()
        return [_row_to_checkpoint(row) for row in rows]

    def list_checkpoints_for_inspection(
        self,
        inspection_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Checkpoint]:
        with self._use(conn) as active:
            rows = active.execute(
                """
                SELECT checkpoints.* FROM checkpoints
                JOIN sections ON sections.id = checkpoints.section_id
                WHERE sections.inspection_id = ?
                ORDER BY sections.position, sections.id, checkpoints.position, checkpoints.id
                """,
                (inspection_id,),
            ).fetchall()
        return [_row_to_checkpoint(row) for row in rows]

    def get_checkpoint(self, checkpoint_id: int) -> Optional[Checkpoint]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
        return _row_to_checkpoint(row) if row else None

    def get_inspection_for_checkpoint(self, checkpoint_id: int) -> Optional[Inspection]:
        with self.session() as conn:
            row = conn.execute(
                """
                SELECT inspections.* FROM inspections
                JOIN sections ON sections.inspection_id = inspections.id
                JOIN checkpoints ON checkpoints.section_id = sections.id
                WHERE checkpoints.id = ?
                """,
                (checkpoint_id,),
            ).fetchone()
        return _row_to_inspection(row) if row else None

    def update_checkpoint(
        self,
        checkpoint_id: int,
        *,
        status: Optional[CheckpointStatus],
        notes: Optional[str],
        estimated_hours: Optional[float],
    ) -> Optional[Checkpoint]:
        with self.session() as conn:
            conn.execute(
                "UPDATE checkpoints SET status = ?, notes = ?, estimated_hours = ? WHERE id = ?",
                (status.value if status else None, notes, estimated_hours, checkpoint_id),
            )
        return self.get_checkpoint(checkpoint_id)

    def mark_unset_checkpoints_as_pass(self, inspection_id: int) -> int:
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE checkpoints
                SET status = ?, notes = NULL, estimated_hours = NULL
                WHERE status IS NULL
                  AND section_id IN (SELECT id FROM sections WHERE inspection_id = ?)
                """,
                (CheckpointStatus.PASS.value, inspection_id),
            )
            return cursor.rowcount

    def count_unset_checkpoints(self, inspection_id: int) -> int:
        with self.session() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM checkpoints
                JOIN sections ON sections.id = checkpoints.section_id
                WHERE sections.inspection_id = ? AND checkpoints.status IS NULL
                """,
                (inspection_id,),
            ).fetchone()[0]

    def mark_inspection_completed(
        self,
        conn: sqlite3.Connection,
        inspection_id: int,
        completed_at: datetime,
    ) -> None:
        conn.execute(
            "UPDATE inspections SET status = ?, completed_at = ? WHERE id = ?",
            (InspectionStatus.COMPLETED.value, _format_datetime(completed_at), inspection_id),
        )

    def update_technician_remarks(self, inspection_id: int, remarks: Optional[str]) -> None:
        with self.session() as conn:
            conn.execute(
                "UPDATE inspections SET technician_remarks = ? WHERE id = ?",
                (remarks, inspection_id),
            )

    def delete_inspection(self, inspection_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM inspections WHERE id = ?", (inspection_id,))

    # Media operations
    def add_media(
        self,
        *,
        checkpoint_id: int,
        type: MediaType,
        storage: MediaStorage,
        filename: str,
        mime_type: str,
        size: int,
        data: Optional[bytes] = None,
        object_key: Optional[str] = None,
    ) -> Media:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO media (checkpoint_id, type, storage, data, object_key, filename, mime_type, size, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint_id,
                    type.value,
                    storage.value,
                    data,
                    object_key,
                    filename,
                    mime_type,
                    size,
                    _format_datetime(now),
                ),
            )
            media_id = cursor.lastrowid
        return Media(
            id=media_id,
            checkpoint_id=checkpoint_id,
            type=type,
            storage=storage,
            filename=filename,
            mime_type=mime_type,
            size=size,
            created_at=now,
            object_key=object_key,
        )

    def get_media(self, media_id: int) -> Optional[Media]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
        return _row_to_media(row) if row else None

    def get_media_data(self, media_id: int) -> Optional[bytes]:
        with self.session() as conn:
            row = conn.execute("SELECT data FROM media WHERE id = ?", (media_id,)).fetchone()
        if not row or row["data"] is None:
            return None
        return bytes(row["data"])

    def list_media_for_checkpoint(self, checkpoint_id: int) -> List[Media]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM media WHERE checkpoint_id = ? ORDER BY created_at, id",
                (checkpoint_id,),
            ).fetchall()
        return [_row_to_media(row) for row in rows]

    def list_media_for_inspection(self, inspection_id: int) -> List[Media]:
        with self.session() as conn:
            rows = conn.execute(
                """
                SELECT media.* FROM media
                JOIN checkpoints ON checkpoints.id = media.checkpoint_id
                JOIN sections ON sections.id = checkpoints.section_id
                WHERE sections.inspection_id = ?
                ORDER BY media.created_at, media.id
                """,
                (inspection_id,),
            ).fetchall()
        return [_row_to_media(row) for row in rows]

    def list_object_keys(self) -> set[str]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT object_key FROM media WHERE storage = ? AND object_key IS NOT NULL",
                (MediaStorage.OBJECT.value,),
            ).fetchall()
        return {row["object_key"] for row in rows}

    def delete_media(self, media_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM media WHERE id = ?", (media_id,))


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        password_hash=row["password_hash"],
        role=UserRole(row["role"]),
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_session_token(row: sqlite3.Row) -> SessionToken:
    return SessionToken(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        created_at=_parse_datetime(row["created_at"]),
        expires_at=_parse_datetime(row["expires_at"]),
    )


def _row_to_equipment(row: sqlite3.Row) -> Equipment:
    return Equipment(
        id=row["id"],
        type=EquipmentType(row["type"]),
        model=row["model"],
        serial=row["serial"],
        location=row["location"],
        hours_used=row["hours_used"],
        status=EquipmentStatus(row["status"]),
        created_at=_parse_datetime(row["created_at"]),
        task_id=row["task_id"],
    )


def _row_to_template(row: sqlite3.Row) -> InspectionTemplate:
    return InspectionTemplate(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        equipment_type=EquipmentType(row["equipment_type"]),
        is_default=bool(row["is_default"]),
        requires_freight_id=bool(row["requires_freight_id"]),
        parent_template_id=row["parent_template_id"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_template_section(row: sqlite3.Row) -> TemplateSection:
    return TemplateSection(
        id=row["id"],
        template_id=row["template_id"],
        name=row["name"],
        order=row["position"],
    )


def _row_to_template_checkpoint(row: sqlite3.Row) -> TemplateCheckpoint:
    return TemplateCheckpoint(
        id=row["id"],
        section_id=row["section_id"],
        name=row["name"],
        critical=bool(row["critical"]),
        order=row["position"],
    )


def _row_to_inspection(row: sqlite3.Row) -> Inspection:
    return Inspection(
        id=row["id"],
        equipment_id=row["equipment_id"],
        technician_id=row["technician_id"],
        status=InspectionStatus(row["status"]),
        started_at=_parse_datetime(row["started_at"]),
        completed_at=_parse_datetime(row["completed_at"]) if row["completed_at"] else None,
        template_id=row["template_id"],
        task_id=row["task_id"],
        serial_number=row["serial_number"],
        freight_id=row["freight_id"],
        technician_remarks=row["technician_remarks"],
    )


def _row_to_section(row: sqlite3.Row) -> Section:
    return Section(
        id=row["id"],
        inspection_id=row["inspection_id"],
        name=row["name"],
        code=row["code"],
        order=row["position"],
    )


def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
    return Checkpoint(
        id=row["id"],
        section_id=row["section_id"],
        name=row["name"],
        critical=bool(row["critical"]),
        order=row["position"],
        status=CheckpointStatus(row["status"]) if row["status"] else None,
        notes=row["notes"],
        estimated_hours=row["estimated_hours"],
    )


def _row_to_media(row: sqlite3.Row) -> Media:
    return Media(
        id=row["id"],
        checkpoint_id=row["checkpoint_id"],
        type=MediaType(row["type"]),
        storage=MediaStorage(row["storage"]),
        filename=row["filename"],
        mime_type=row["mime_type"],
        size=row["size"],
        created_at=_parse_datetime(row["created_at"]),
        object_key=row["object_key"],
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _format_datetime(value: datetime) -> str:
    return value.strftime(ISO_FORMAT)


def _parse_datetime(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT)
