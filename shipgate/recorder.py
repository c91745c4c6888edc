"""Durable, append-only record of pipeline runs.

Every run and stage transition is written to the ``run_events`` table and
committed before the engine makes its next scheduling decision. Rows are
never updated or deleted; ``replay`` rebuilds a Run from its events and is
the authoritative view after a crash or restart.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from shipgate.data_models import Run, RunStatus, StageResult, StageStatus, utc_now
from shipgate.database import Database

logger = logging.getLogger(__name__)

RUN_CREATED = "run_created"
RUN_REJECTED = "run_rejected"
RUN_STARTED = "run_started"
STAGE_STARTED = "stage_started"
STAGE_FINISHED = "stage_finished"
RUN_FINISHED = "run_finished"


class RunRecorder:
    """Append-only run log backed by sqlite."""

    def __init__(self, db: Database):
        self.db = db

    def next_build_number(self, pipeline: str) -> int:
        """
        Allocate the next build number for a pipeline.

        Numbers are strictly increasing per pipeline, also across processes
        sharing the database.
        """
        with self.db.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO build_numbers (pipeline, last_number) VALUES (?, 1)
                ON CONFLICT(pipeline) DO UPDATE SET last_number = last_number + 1
                """,
                (pipeline,),
            )
            number = conn.execute(
                "SELECT last_number FROM build_numbers WHERE pipeline = ?", (pipeline,)
            ).fetchone()[0]
            conn.commit()
        return number

    def record(
        self,
        run_id: str,
        pipeline: str,
        event: str,
        stage: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Append one event and commit it.

        Returns:
            Sequence number of the new row
        """
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO run_events (run_id, pipeline, event, stage, payload_json, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, pipeline, event, stage, json.dumps(payload or {}), utc_now().isoformat()),
            )
            conn.commit()
            seq = cursor.lastrowid
        logger.debug(f"Recorded {event} for {run_id}{'/' + stage if stage else ''} (seq {seq})")
        return seq

    # ------------------------------------------------------------------
    # Convenience writers
    # ------------------------------------------------------------------

    def run_created(self, run: Run, definition: Dict[str, Any]) -> int:
        return self.record(run.run_id, run.pipeline, RUN_CREATED, payload={
            "build_number": run.build_number,
            "variables": run.variables,
            "definition": definition,
        })

    def run_rejected(self, run: Run, reason: str) -> int:
        return self.record(run.run_id, run.pipeline, RUN_REJECTED, payload={"reason": reason})

    def run_started(self, run: Run) -> int:
        return self.record(run.run_id, run.pipeline, RUN_STARTED, payload={"started_at": run.started_at})

    def stage_started(self, run: Run, result: StageResult) -> int:
        return self.record(run.run_id, run.pipeline, STAGE_STARTED, stage=result.stage,
                           payload={"started_at": result.started_at})

    def stage_finished(self, run: Run, result: StageResult) -> int:
        return self.record(run.run_id, run.pipeline, STAGE_FINISHED, stage=result.stage,
                           payload=result.to_dict())

    def run_finished(self, run: Run) -> int:
        return self.record(run.run_id, run.pipeline, RUN_FINISHED, payload={
            "status": run.status.value,
            "reason": run.reason,
            "completed_at": run.completed_at,
        })

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def events(self, run_id: str) -> List[Dict[str, Any]]:
        """All events of a run in recording order."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM run_events WHERE run_id = ? ORDER BY seq", (run_id,)
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def definition(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Pipeline definition snapshot taken when the run was created."""
        for event in self.events(run_id):
            if event["event"] == RUN_CREATED:
                return event["payload"].get("definition")
        return None

    def replay(self, run_id: str) -> Optional[Run]:
        """
        Reconstruct a run from its recorded events.

        Returns:
            The Run, or None if nothing was recorded under ``run_id``
        """
        events = self.events(run_id)
        if not events:
            return None

        run: Optional[Run] = None
        for event in events:
            name = event["event"]
            payload = event["payload"]

            if name == RUN_CREATED:
                run = Run(
                    run_id=run_id,
                    pipeline=event["pipeline"],
                    build_number=payload.get("build_number", 0),
                    variables=payload.get("variables", {}),
                )
                for stage in (payload.get("definition") or {}).get("stages", []):
                    run.stages[stage["name"]] = StageResult(run_id=run_id, stage=stage["name"])
                continue

            if run is None:
                logger.error(f"Run log of {run_id} does not start with {RUN_CREATED} (seq {event['seq']})")
                return None

            if name == RUN_REJECTED:
                run.reason = payload.get("reason", "")
            elif name == RUN_STARTED:
                run.status = RunStatus.RUNNING
                run.started_at = payload.get("started_at") or event["recorded_at"]
            elif name == STAGE_STARTED:
                result = run.stages.setdefault(event["stage"], StageResult(run_id=run_id, stage=event["stage"]))
                result.status = StageStatus.RUNNING
                result.started_at = payload.get("started_at") or event["recorded_at"]
            elif name == STAGE_FINISHED:
                run.stages[event["stage"]] = StageResult.from_dict(payload)
            elif name == RUN_FINISHED:
                run.status = RunStatus(payload["status"])
                run.reason = payload.get("reason", "")
                run.completed_at = payload.get("completed_at") or event["recorded_at"]

        return run

    def list_runs(self, pipeline: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of recorded runs, newest first."""
        query = "SELECT run_id FROM run_events WHERE event = ?"
        params: List[Any] = [RUN_CREATED]
        if pipeline:
            query += " AND pipeline = ?"
            params.append(pipeline)
        query += " ORDER BY seq DESC"

        with self.db.get_connection() as conn:
            run_ids = [row["run_id"] for row in conn.execute(query, params).fetchall()]

        summaries = []
        for run_id in run_ids:
            run = self.replay(run_id)
            if run is None:
                continue
            summaries.append({
                "run_id": run.run_id,
                "pipeline": run.pipeline,
                "build_number": run.build_number,
                "status": run.status.value,
                "started_at": run.started_at,
                "completed_at": run.completed_at,
                "reason": run.reason,
            })
        return summaries

    def incomplete_runs(self) -> List[str]:
        """Runs that started but never finished (e.g. the engine crashed)."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT run_id FROM run_events WHERE event = ?
                AND run_id NOT IN (SELECT run_id FROM run_events WHERE event = ?)
                ORDER BY seq
                """,
                (RUN_STARTED, RUN_FINISHED),
            ).fetchall()
        return [row["run_id"] for row in rows]

    def queued_runs(self) -> List[str]:
        """Runs that were created and accepted but never started."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT run_id FROM run_events WHERE event = ?
                AND run_id NOT IN (SELECT run_id FROM run_events WHERE event IN (?, ?, ?))
                ORDER BY seq
                """,
                (RUN_CREATED, RUN_STARTED, RUN_REJECTED, RUN_FINISHED),
            ).fetchall()
        return [row["run_id"] for row in rows]

    def is_terminal(self, run_id: str) -> bool:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM run_events WHERE run_id = ? AND event = ? LIMIT 1",
                (run_id, RUN_FINISHED),
            ).fetchone()
        return row is not None

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Dict[str, Any]:
        event = dict(row)
        event["payload"] = json.loads(event.pop("payload_json") or "{}")
        return event
