"""Pipeline run/step audit trail.

Purely diagnostic: business logic writes here but never reads back.

    recorder = audit.start("MemoryExtraction")
    with recorder.step("generate_extraction", input_summary=text) as step:
        payload = await ...
        step.output_summary = f"{len(payload.entities)} entities"
    recorder.finish()
"""

import time
from contextlib import contextmanager
from typing import Iterator, Optional

from ..interfaces import PipelineRun, PipelineStatus, PipelineStep
from ..utils import parse_timestamp, truncate, utc_now
from .sqlite_base import SQLiteStore


class PipelineAuditStore(SQLiteStore):
    """SQLite storage for PipelineRun / PipelineStep records."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS pipeline_runs (
            id TEXT PRIMARY KEY,
            pipeline_type TEXT NOT NULL,
            status TEXT NOT NULL,
            duration_ms REAL,
            error TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pipeline_steps (
            run_id TEXT NOT NULL,
            step_order INTEGER NOT NULL,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            input_summary TEXT DEFAULT '',
            output_summary TEXT DEFAULT '',
            duration_ms REAL DEFAULT 0,
            FOREIGN KEY (run_id) REFERENCES pipeline_runs(id) ON DELETE CASCADE,
            UNIQUE(run_id, step_order)
        );

        CREATE INDEX IF NOT EXISTS idx_pipeline_runs_type ON pipeline_runs(pipeline_type);
    """

    def start(self, pipeline_type: str) -> "PipelineRecorder":
        run = PipelineRun(pipeline_type=pipeline_type)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO pipeline_runs (id, pipeline_type, status, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (run.id, run.pipeline_type, run.status.value, run.created_at.isoformat()),
            )
            self._conn.commit()
        return PipelineRecorder(self, run)

    def add_step(self, step: PipelineStep) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO pipeline_steps
                    (run_id, step_order, name, status, input_summary, output_summary, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.run_id, step.order, step.name, step.status.value,
                    step.input_summary, step.output_summary, step.duration_ms,
                ),
            )
            self._conn.commit()

    def finalize(self, run: PipelineRun) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE pipeline_runs SET status = ?, duration_ms = ?, error = ? WHERE id = ?",
                (run.status.value, run.duration_ms, run.error, run.id),
            )
            self._conn.commit()

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pipeline_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if row is None:
                return None
            step_rows = self._conn.execute(
                "SELECT * FROM pipeline_steps WHERE run_id = ? ORDER BY step_order",
                (run_id,),
            ).fetchall()

        return PipelineRun(
            id=row["id"],
            pipeline_type=row["pipeline_type"],
            status=PipelineStatus(row["status"]),
            duration_ms=row["duration_ms"],
            error=row["error"],
            created_at=parse_timestamp(row["created_at"]) or utc_now(),
            steps=[
                PipelineStep(
                    run_id=s["run_id"],
                    order=s["step_order"],
                    name=s["name"],
                    status=PipelineStatus(s["status"]),
                    input_summary=s["input_summary"],
                    output_summary=s["output_summary"],
                    duration_ms=s["duration_ms"],
                )
                for s in step_rows
            ],
        )

    def list_runs(self, pipeline_type: Optional[str] = None, limit: int = 50) -> list[PipelineRun]:
        with self._lock:
            if pipeline_type:
                rows = self._conn.execute(
                    "SELECT id FROM pipeline_runs WHERE pipeline_type = ? "
                    "ORDER BY created_at DESC LIMIT ?",
                    (pipeline_type, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT id FROM pipeline_runs ORDER BY created_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [run for run in (self.get_run(r["id"]) for r in rows) if run is not None]


class StepHandle:
    """Mutable output holder for a step in progress."""

    def __init__(self):
        self.output_summary = ""


class PipelineRecorder:
    """Appends ordered steps to one pipeline run and finalizes it."""

    def __init__(self, store: PipelineAuditStore, run: PipelineRun):
        self.store = store
        self.run = run
        self._started = time.perf_counter()

    @property
    def run_id(self) -> str:
        return self.run.id

    def _append(self, name: str, status: PipelineStatus, input_summary: str,
                output_summary: str, duration_ms: float) -> PipelineStep:
        step = PipelineStep(
            run_id=self.run.id,
            order=len(self.run.steps) + 1,
            name=name,
            status=status,
            input_summary=truncate(input_summary),
            output_summary=truncate(output_summary),
            duration_ms=duration_ms,
        )
        self.run.steps.append(step)
        self.store.add_step(step)
        return step

    @contextmanager
    def step(self, name: str, input_summary: str = "") -> Iterator[StepHandle]:
        """Time a step; an exception marks it failed and propagates."""
        handle = StepHandle()
        started = time.perf_counter()
        try:
            yield handle
        except Exception as e:
            self._append(
                name, PipelineStatus.FAILED, input_summary, str(e),
                (time.perf_counter() - started) * 1000,
            )
            raise
        self._append(
            name, PipelineStatus.COMPLETED, input_summary, handle.output_summary,
            (time.perf_counter() - started) * 1000,
        )

    def skip(self, name: str, reason: str = "disabled") -> None:
        self._append(name, PipelineStatus.SKIPPED, "", reason, 0.0)

    def finish(self, error: Optional[str] = None) -> PipelineRun:
        self.run.status = PipelineStatus.FAILED if error else PipelineStatus.COMPLETED
        self.run.error = error
        self.run.duration_ms = (time.perf_counter() - self._started) * 1000
        self.store.finalize(self.run)
        return self.run

