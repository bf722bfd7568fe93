"""Relational store for center assignment (SQLite or Postgres)."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
import sqlite3
from typing import Any, Callable, Iterable, Iterator, Mapping, TypeVar

import psycopg

from .contracts import (
    AssignmentContractError,
    Cluster,
    ExamCenter,
    Region,
    School,
    ensure_student_status,
)


logger = logging.getLogger("exam_board.center_assignment.store")

T = TypeVar("T")

_PLACEHOLDER_RE = re.compile(r"\{p\d+\}")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS regions (
    region_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS clusters (
    cluster_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    region_id INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS exam_centers (
    center_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    region_id INTEGER NOT NULL,
    cluster_id INTEGER NOT NULL,
    capacity INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS schools (
    school_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    region_id INTEGER,
    cluster_id INTEGER
);
CREATE TABLE IF NOT EXISTS students (
    student_id INTEGER PRIMARY KEY,
    school_id INTEGER NOT NULL,
    exam_year_id INTEGER NOT NULL,
    status TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_students_year_school
    ON students (exam_year_id, school_id);
CREATE TABLE IF NOT EXISTS center_assignments (
    exam_year_id INTEGER NOT NULL,
    school_id INTEGER NOT NULL,
    center_id INTEGER NOT NULL,
    seats INTEGER NOT NULL,
    tier TEXT NOT NULL,
    source TEXT NOT NULL,
    run_id TEXT,
    assigned_at_utc TEXT NOT NULL,
    PRIMARY KEY (exam_year_id, school_id)
);
CREATE INDEX IF NOT EXISTS ix_center_assignments_center
    ON center_assignments (exam_year_id, center_id);
CREATE TABLE IF NOT EXISTS assignment_runs (
    run_id TEXT PRIMARY KEY,
    exam_year_id INTEGER NOT NULL,
    started_at_utc TEXT NOT NULL,
    finished_at_utc TEXT NOT NULL,
    assigned_count INTEGER NOT NULL,
    skipped_count INTEGER NOT NULL,
    plan_digest TEXT NOT NULL,
    report_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_assignment_runs_year
    ON assignment_runs (exam_year_id, finished_at_utc);
"""


class StorageError(RuntimeError):
    """Raised when the store cannot be read or a write transaction fails."""


@dataclass(frozen=True)
class AssignmentRecord:
    exam_year_id: int
    school_id: int
    center_id: int
    seats: int
    tier: str
    source: str
    run_id: str | None
    assigned_at_utc: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "exam_year_id": self.exam_year_id,
            "school_id": self.school_id,
            "center_id": self.center_id,
            "seats": self.seats,
            "tier": self.tier,
            "source": self.source,
            "run_id": self.run_id,
            "assigned_at_utc": self.assigned_at_utc,
        }


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    exam_year_id: int
    started_at_utc: str
    finished_at_utc: str
    assigned_count: int
    skipped_count: int
    plan_digest: str
    report: dict[str, Any]


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


class AssignmentStore:
    """
    Reads schools, centers and assignments, and hosts write transactions.

    Writers get a raw connection inside run_write_tx(); everything they execute
    there commits or rolls back as one unit.
    """

    def __init__(self, locator: str | Path, *, timeout_seconds: float = 30.0) -> None:
        self.locator = str(locator)
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        self.timeout_seconds = float(timeout_seconds)
        if self.timeout_seconds <= 0:
            raise StorageError("timeout_seconds must be > 0")
        if self.backend == "sqlite":
            db_path = Path(_sqlite_path(self.locator))
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ---- Reads ----------------------------------------------------------

    def read_regions(self) -> list[Region]:
        rows = self._read_all("SELECT region_id, name FROM regions ORDER BY region_id", ())
        return [Region(region_id=int(row[0]), name=str(row[1])) for row in rows]

    def read_clusters(self) -> list[Cluster]:
        rows = self._read_all("SELECT cluster_id, name, region_id FROM clusters ORDER BY cluster_id", ())
        return [Cluster(cluster_id=int(row[0]), name=str(row[1]), region_id=int(row[2])) for row in rows]

    def read_centers(self) -> list[ExamCenter]:
        rows = self._read_all(
            """
            SELECT center_id, name, region_id, cluster_id, capacity, is_active
            FROM exam_centers
            ORDER BY center_id
            """,
            (),
        )
        return [_center_from_row(row) for row in rows]

    def read_active_centers(self) -> list[ExamCenter]:
        return [center for center in self.read_centers() if center.is_active]

    def read_unassigned_schools(self, exam_year_id: int) -> list[School]:
        """Schools with no assignment row for the year; demand is left at 0."""

        rows = self._read_all(
            """
            SELECT s.school_id, s.name, s.region_id, s.cluster_id
            FROM schools s
            WHERE NOT EXISTS (
                SELECT 1 FROM center_assignments a
                WHERE a.exam_year_id = {p1} AND a.school_id = s.school_id
            )
            ORDER BY s.school_id
            """,
            (int(exam_year_id),),
        )
        return [
            School(
                school_id=int(row[0]),
                name=str(row[1] or ""),
                region_id=None if row[2] is None else int(row[2]),
                cluster_id=None if row[3] is None else int(row[3]),
            )
            for row in rows
        ]

    def read_center_usage(self, exam_year_id: int) -> dict[int, int]:
        rows = self._read_all(
            """
            SELECT center_id, COALESCE(SUM(seats), 0)
            FROM center_assignments
            WHERE exam_year_id = {p1}
            GROUP BY center_id
            ORDER BY center_id
            """,
            (int(exam_year_id),),
        )
        return {int(row[0]): int(row[1]) for row in rows}

    def read_assignments(self, exam_year_id: int) -> list[AssignmentRecord]:
        rows = self._read_all(
            """
            SELECT exam_year_id, school_id, center_id, seats, tier, source, run_id, assigned_at_utc
            FROM center_assignments
            WHERE exam_year_id = {p1}
            ORDER BY school_id
            """,
            (int(exam_year_id),),
        )
        return [_assignment_from_row(row) for row in rows]

    def read_assignment(self, exam_year_id: int, school_id: int) -> AssignmentRecord | None:
        with self._reading() as conn:
            row = query_one(
                conn,
                self.backend,
                """
                SELECT exam_year_id, school_id, center_id, seats, tier, source, run_id, assigned_at_utc
                FROM center_assignments
                WHERE exam_year_id = {p1} AND school_id = {p2}
                """,
                (int(exam_year_id), int(school_id)),
            )
        return None if row is None else _assignment_from_row(row)

    def count_students(self, exam_year_id: int, *, statuses: Iterable[str]) -> dict[int, int]:
        status_list = sorted({ensure_student_status(item) for item in statuses})
        if not status_list:
            return {}
        markers = ", ".join(f"{{p{idx}}}" for idx in range(2, len(status_list) + 2))
        rows = self._read_all(
            f"""
            SELECT school_id, COUNT(1)
            FROM students
            WHERE exam_year_id = {{p1}} AND status IN ({markers})
            GROUP BY school_id
            ORDER BY school_id
            """,
            (int(exam_year_id), *status_list),
        )
        return {int(row[0]): int(row[1]) for row in rows}

    def run_exists(self, run_id: str) -> bool:
        with self._reading() as conn:
            row = query_one(
                conn,
                self.backend,
                "SELECT 1 FROM assignment_runs WHERE run_id = {p1}",
                (str(run_id),),
            )
        return row is not None

    def read_latest_run(self, exam_year_id: int) -> RunRecord | None:
        with self._reading() as conn:
            row = query_one(
                conn,
                self.backend,
                """
                SELECT run_id, exam_year_id, started_at_utc, finished_at_utc,
                       assigned_count, skipped_count, plan_digest, report_json
                FROM assignment_runs
                WHERE exam_year_id = {p1}
                ORDER BY finished_at_utc DESC, run_id DESC
                LIMIT 1
                """,
                (int(exam_year_id),),
            )
        if row is None:
            return None
        try:
            report = json.loads(str(row[7]))
        except json.JSONDecodeError as exc:
            raise StorageError(f"RUN_ROW_CORRUPT:{row[0]}: report_json is not valid JSON") from exc
        return RunRecord(
            run_id=str(row[0]),
            exam_year_id=int(row[1]),
            started_at_utc=str(row[2]),
            finished_at_utc=str(row[3]),
            assigned_count=int(row[4]),
            skipped_count=int(row[5]),
            plan_digest=str(row[6]),
            report=report if isinstance(report, dict) else {},
        )

    # ---- Reference data -------------------------------------------------

    def import_snapshot(self, payload: Mapping[str, Any]) -> dict[str, int]:
        """
        Upsert regions, clusters, centers, schools and students in one transaction.

        This is the loading path for data maintained elsewhere (admin screens,
        exports); it never touches center_assignments.
        """

        if not isinstance(payload, Mapping):
            raise AssignmentContractError("snapshot must be a mapping")
        regions = [Region.from_payload(item) for item in _as_list(payload.get("regions"), "regions")]
        clusters = [Cluster.from_payload(item) for item in _as_list(payload.get("clusters"), "clusters")]
        centers = [ExamCenter.from_payload(item) for item in _as_list(payload.get("exam_centers"), "exam_centers")]
        schools = [School.from_payload(item) for item in _as_list(payload.get("schools"), "schools")]
        students = [_student_from_payload(item) for item in _as_list(payload.get("students"), "students")]

        def _tx(conn: Any) -> dict[str, int]:
            for region in regions:
                self._upsert_region(conn, region)
            for cluster in clusters:
                self._upsert_cluster(conn, cluster)
            for center in centers:
                self._upsert_center(conn, center)
            for school in schools:
                self._upsert_school(conn, school)
            for student in students:
                self._upsert_student(conn, **student)
            return {
                "regions": len(regions),
                "clusters": len(clusters),
                "exam_centers": len(centers),
                "schools": len(schools),
                "students": len(students),
            }

        counts = self.run_write_tx(_tx)
        logger.info("Snapshot imported: %s", counts)
        return counts

    def upsert_center(self, center: ExamCenter) -> None:
        self.run_write_tx(lambda conn: self._upsert_center(conn, center))

    def upsert_school(self, school: School) -> None:
        self.run_write_tx(lambda conn: self._upsert_school(conn, school))

    def _upsert_region(self, conn: Any, region: Region) -> None:
        execute(
            conn,
            self.backend,
            """
            INSERT INTO regions (region_id, name) VALUES ({p1}, {p2})
            ON CONFLICT (region_id) DO UPDATE SET name = excluded.name
            """,
            (region.region_id, region.name),
        )

    def _upsert_cluster(self, conn: Any, cluster: Cluster) -> None:
        execute(
            conn,
            self.backend,
            """
            INSERT INTO clusters (cluster_id, name, region_id) VALUES ({p1}, {p2}, {p3})
            ON CONFLICT (cluster_id) DO UPDATE SET name = excluded.name, region_id = excluded.region_id
            """,
            (cluster.cluster_id, cluster.name, cluster.region_id),
        )

    def _upsert_center(self, conn: Any, center: ExamCenter) -> None:
        execute(
            conn,
            self.backend,
            """
            INSERT INTO exam_centers (center_id, name, region_id, cluster_id, capacity, is_active)
            VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6})
            ON CONFLICT (center_id) DO UPDATE SET
                name = excluded.name,
                region_id = excluded.region_id,
                cluster_id = excluded.cluster_id,
                capacity = excluded.capacity,
                is_active = excluded.is_active
            """,
            (
                center.center_id,
                center.name or f"center-{center.center_id}",
                center.region_id,
                center.cluster_id,
                center.capacity,
                1 if center.is_active else 0,
            ),
        )

    def _upsert_school(self, conn: Any, school: School) -> None:
        execute(
            conn,
            self.backend,
            """
            INSERT INTO schools (school_id, name, region_id, cluster_id) VALUES ({p1}, {p2}, {p3}, {p4})
            ON CONFLICT (school_id) DO UPDATE SET
                name = excluded.name,
                region_id = excluded.region_id,
                cluster_id = excluded.cluster_id
            """,
            (school.school_id, school.name or f"school-{school.school_id}", school.region_id, school.cluster_id),
        )

    def _upsert_student(self, conn: Any, *, student_id: int, school_id: int, exam_year_id: int, status: str) -> None:
        execute(
            conn,
            self.backend,
            """
            INSERT INTO students (student_id, school_id, exam_year_id, status) VALUES ({p1}, {p2}, {p3}, {p4})
            ON CONFLICT (student_id) DO UPDATE SET
                school_id = excluded.school_id,
                exam_year_id = excluded.exam_year_id,
                status = excluded.status
            """,
            (student_id, school_id, exam_year_id, status),
        )

    # ---- Transactions ---------------------------------------------------

    def run_write_tx(self, func: Callable[[Any], T]) -> T:
        """
        Run func(conn) inside one write transaction.

        SQLite takes the database write lock up front (BEGIN IMMEDIATE), so
        concurrent writers queue for up to timeout_seconds. Postgres runs the
        body under lock/statement timeouts. Any failure rolls everything back.
        """

        try:
            with self._connection() as conn:
                if self.backend == "sqlite":
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        result = func(conn)
                    except BaseException:
                        if conn.in_transaction:
                            conn.execute("ROLLBACK")
                        raise
                    conn.execute("COMMIT")
                    return result
                with conn.transaction():
                    timeout_ms = int(self.timeout_seconds * 1000)
                    conn.execute(f"SET LOCAL lock_timeout = {timeout_ms}")
                    conn.execute(f"SET LOCAL statement_timeout = {timeout_ms}")
                    return func(conn)
        except (sqlite3.Error, psycopg.Error) as exc:
            raise StorageError(f"WRITE_TX_FAILED:{exc.__class__.__name__}:{exc}") from exc

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        if self.backend == "sqlite":
            conn = sqlite3.connect(
                _sqlite_path(self.locator),
                timeout=self.timeout_seconds,
                isolation_level=None,
            )
            try:
                yield conn
            finally:
                conn.close()
            return
        with psycopg.connect(self.locator, connect_timeout=max(1, int(self.timeout_seconds))) as conn:
            yield conn

    @contextmanager
    def _reading(self) -> Iterator[Any]:
        try:
            with self._connection() as conn:
                yield conn
        except (sqlite3.Error, psycopg.Error) as exc:
            raise StorageError(f"READ_FAILED:{exc.__class__.__name__}:{exc}") from exc

    def _read_all(self, sql: str, params: tuple[Any, ...]) -> list[Any]:
        with self._reading() as conn:
            return query_all(conn, self.backend, sql, params)

    def _init_schema(self) -> None:
        try:
            with self._connection() as conn:
                execute_script(conn, self.backend, _SCHEMA)
        except (sqlite3.Error, psycopg.Error) as exc:
            raise StorageError(f"SCHEMA_INIT_FAILED:{exc}") from exc


def _center_from_row(row: Any) -> ExamCenter:
    return ExamCenter(
        center_id=int(row[0]),
        name=str(row[1] or ""),
        region_id=int(row[2]),
        cluster_id=int(row[3]),
        capacity=int(row[4]),
        is_active=bool(int(row[5])),
    )


def _assignment_from_row(row: Any) -> AssignmentRecord:
    return AssignmentRecord(
        exam_year_id=int(row[0]),
        school_id=int(row[1]),
        center_id=int(row[2]),
        seats=int(row[3]),
        tier=str(row[4]),
        source=str(row[5]),
        run_id=None if row[6] in (None, "") else str(row[6]),
        assigned_at_utc=str(row[7]),
    )


def _student_from_payload(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise AssignmentContractError("student must be a mapping")
    values: dict[str, Any] = {}
    for key in ("student_id", "school_id", "exam_year_id"):
        raw = payload.get(key)
        try:
            number = int(raw)
        except (TypeError, ValueError) as exc:
            raise AssignmentContractError(f"student.{key} must be an integer; got {raw!r}") from exc
        if number <= 0:
            raise AssignmentContractError(f"student.{key} must be a positive integer")
        values[key] = number
    values["status"] = ensure_student_status(payload.get("status", "approved"))
    return values


def _as_list(value: Any, field_name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise AssignmentContractError(f"{field_name} must be a list")
    return value


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


def render_sql(sql: str, backend: str) -> str:
    marker = "%s" if backend == "postgres" else "?"
    return _PLACEHOLDER_RE.sub(marker, sql)


def query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    return conn.execute(render_sql(sql, backend), params).fetchone()


def query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    return list(conn.execute(render_sql(sql, backend), params).fetchall())


def execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> int:
    cur = conn.execute(render_sql(sql, backend), params)
    return int(cur.rowcount or 0)


def execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
        return
    statements = [item.strip() for item in sql.split(";") if item.strip()]
    for statement in statements:
        conn.execute(statement)
