"""Durable agent run state: runs, phases, steps and experiences.

A run and all its phases are inserted in one transaction. After creation
only status, result and timestamp columns change; steps are appended one
at a time. Any caller may poll a run while it executes.
"""

import json
from typing import Optional

from ..interfaces import (
    AgentPhase,
    AgentRun,
    AgentStep,
    Experience,
    PhaseStatus,
    RunStatus,
    StepStatus,
)
from ..utils import parse_timestamp, utc_now
from .sqlite_base import SQLiteStore


class AgentRunStore(SQLiteStore):
    """SQLite persistence for agent execution state."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS agent_runs (
            id TEXT PRIMARY KEY,
            goal TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
            result_summary TEXT,
            error TEXT,
            created_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS agent_phases (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            phase_order INTEGER NOT NULL,
            goal TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed')),
            result TEXT,
            started_at TEXT,
            completed_at TEXT,
            FOREIGN KEY (run_id) REFERENCES agent_runs(id) ON DELETE CASCADE,
            UNIQUE(run_id, phase_order)
        );

        CREATE TABLE IF NOT EXISTS agent_steps (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            phase_id TEXT NOT NULL,
            step_order INTEGER NOT NULL,
            thought TEXT NOT NULL DEFAULT '',
            action TEXT NOT NULL,
            action_input TEXT NOT NULL DEFAULT '{}',
            observation TEXT,
            status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
            created_at TEXT NOT NULL,
            FOREIGN KEY (phase_id) REFERENCES agent_phases(id) ON DELETE CASCADE,
            UNIQUE(phase_id, step_order)
        );

        CREATE TABLE IF NOT EXISTS experiences (
            id TEXT PRIMARY KEY,
            source_run_id TEXT NOT NULL,
            goal_template TEXT NOT NULL,
            trigger_keywords TEXT NOT NULL DEFAULT '[]',
            steps_json TEXT NOT NULL DEFAULT '[]',
            usage_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_phases_run ON agent_phases(run_id, phase_order);
        CREATE INDEX IF NOT EXISTS idx_steps_phase ON agent_steps(phase_id, step_order);
        CREATE INDEX IF NOT EXISTS idx_experiences_run ON experiences(source_run_id);
    """

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self, goal: str, phase_goals: list[str]) -> AgentRun:
        """Insert a run and its pending phases atomically.

        Raises:
            ValueError: Empty goal or plan.
        """
        if not goal or not goal.strip():
            raise ValueError("Run goal must not be empty")
        phase_goals = [g.strip() for g in phase_goals if g and g.strip()]
        if not phase_goals:
            raise ValueError("A run needs at least one phase")

        run = AgentRun(goal=goal.strip())
        run.phases = [
            AgentPhase(run_id=run.id, order=i, goal=g)
            for i, g in enumerate(phase_goals, start=1)
        ]
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO agent_runs (id, goal, status, created_at) VALUES (?, ?, ?, ?)",
                    (run.id, run.goal, run.status.value, run.created_at.isoformat()),
                )
                self._conn.executemany(
                    """
                    INSERT INTO agent_phases (id, run_id, phase_order, goal, status)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [(p.id, run.id, p.order, p.goal, p.status.value) for p in run.phases],
                )
        return run

    def get_run(self, run_id: str, include_steps: bool = True) -> Optional[AgentRun]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM agent_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            phase_rows = self._conn.execute(
                "SELECT * FROM agent_phases WHERE run_id = ? ORDER BY phase_order", (run_id,)
            ).fetchall()
            step_rows = []
            if include_steps:
                step_rows = self._conn.execute(
                    "SELECT * FROM agent_steps WHERE run_id = ? ORDER BY step_order", (run_id,)
                ).fetchall()

        run = self._row_to_run(row)
        run.phases = [self._row_to_phase(p) for p in phase_rows]
        by_phase = {p.id: p for p in run.phases}
        for s in step_rows:
            by_phase[s["phase_id"]].steps.append(self._row_to_step(s))
        return run

    def list_runs(self, limit: int = 50) -> list[AgentRun]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM agent_runs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def complete_run(self, run_id: str, result_summary: str) -> None:
        self._finish_run(run_id, RunStatus.COMPLETED, result_summary=result_summary)

    def fail_run(self, run_id: str, error: str) -> None:
        self._finish_run(run_id, RunStatus.FAILED, error=error)

    def _finish_run(self, run_id: str, status: RunStatus, result_summary: Optional[str] = None,
                    error: Optional[str] = None) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE agent_runs SET status = ?, result_summary = ?, error = ?, completed_at = ?
                WHERE id = ?
                """,
                (status.value, result_summary, error, utc_now().isoformat(), run_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def start_phase(self, phase_id: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE agent_phases SET status = ?, started_at = ? WHERE id = ?",
                (PhaseStatus.RUNNING.value, utc_now().isoformat(), phase_id),
            )
            self._conn.commit()

    def complete_phase(self, phase_id: str, result: str) -> None:
        self._finish_phase(phase_id, PhaseStatus.COMPLETED, result)

    def fail_phase(self, phase_id: str, error: str) -> None:
        self._finish_phase(phase_id, PhaseStatus.FAILED, error)

    def _finish_phase(self, phase_id: str, status: PhaseStatus, result: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE agent_phases SET status = ?, result = ?, completed_at = ? WHERE id = ?",
                (status.value, result, utc_now().isoformat(), phase_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def add_step(self, step: AgentStep) -> AgentStep:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO agent_steps (
                    id, run_id, phase_id, step_order, thought, action,
                    action_input, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.id, step.run_id, step.phase_id, step.order, step.thought,
                    step.action, json.dumps(step.action_input, default=str),
                    step.status.value, step.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return step

    def finish_step(self, step_id: str, observation: str,
                    status: StepStatus = StepStatus.COMPLETED) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE agent_steps SET observation = ?, status = ? WHERE id = ?",
                (observation, status.value, step_id),
            )
            self._conn.commit()

    def get_steps(self, phase_id: str) -> list[AgentStep]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM agent_steps WHERE phase_id = ? ORDER BY step_order", (phase_id,)
            ).fetchall()
        return [self._row_to_step(r) for r in rows]

    def completed_steps(self, run_id: str) -> list[tuple[AgentPhase, AgentStep]]:
        """Completed steps across all phases, in execution order."""
        run = self.get_run(run_id)
        if run is None:
            return []
        return [
            (phase, step)
            for phase in run.phases
            for step in phase.steps
            if step.status == StepStatus.COMPLETED
        ]

    # ------------------------------------------------------------------
    # Experiences
    # ------------------------------------------------------------------

    def add_experience(self, experience: Experience) -> Experience:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO experiences (
                    id, source_run_id, goal_template, trigger_keywords,
                    steps_json, usage_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    experience.id, experience.source_run_id, experience.goal_template,
                    json.dumps(experience.trigger_keywords), json.dumps(experience.steps),
                    experience.usage_count, experience.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return experience

    def get_experience(self, experience_id: str) -> Optional[Experience]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM experiences WHERE id = ?", (experience_id,)
            ).fetchone()
        return self._row_to_experience(row) if row else None

    def list_experiences(self, source_run_id: Optional[str] = None, limit: int = 100) -> list[Experience]:
        with self._lock:
            if source_run_id:
                rows = self._conn.execute(
                    "SELECT * FROM experiences WHERE source_run_id = ? ORDER BY created_at DESC LIMIT ?",
                    (source_run_id, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM experiences ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
        return [self._row_to_experience(r) for r in rows]

    def increment_usage(self, experience_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE experiences SET usage_count = usage_count + 1 WHERE id = ?",
                (experience_id,),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_run(row) -> AgentRun:
        return AgentRun(
            id=row["id"],
            goal=row["goal"],
            status=RunStatus(row["status"]),
            result_summary=row["result_summary"],
            error=row["error"],
            created_at=parse_timestamp(row["created_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
        )

    @staticmethod
    def _row_to_phase(row) -> AgentPhase:
        return AgentPhase(
            id=row["id"],
            run_id=row["run_id"],
            order=row["phase_order"],
            goal=row["goal"],
            status=PhaseStatus(row["status"]),
            result=row["result"],
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
        )

    @staticmethod
    def _row_to_step(row) -> AgentStep:
        return AgentStep(
            id=row["id"],
            run_id=row["run_id"],
            phase_id=row["phase_id"],
            order=row["step_order"],
            thought=row["thought"],
            action=row["action"],
            action_input=json.loads(row["action_input"] or "{}"),
            observation=row["observation"],
            status=StepStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _row_to_experience(row) -> Experience:
        return Experience(
            id=row["id"],
            source_run_id=row["source_run_id"],
            goal_template=row["goal_template"],
            trigger_keywords=json.loads(row["trigger_keywords"] or "[]"),
            steps=json.loads(row["steps_json"] or "[]"),
            usage_count=row["usage_count"],
            created_at=parse_timestamp(row["created_at"]),
        )
