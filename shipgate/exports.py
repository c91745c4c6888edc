"""Export of run evidence: retention manifests as JSON or CSV."""
import csv
import io
from typing import Any, Dict, List

from shipgate.artifacts.store import ArtifactStore
from shipgate.data_models import Run, utc_now

CSV_COLUMNS = [
    "Run",
    "Stage",
    "Stage Status",
    "Artifact",
    "Media Type",
    "Retention",
    "Retain Until",
    "Size",
    "SHA-256",
    "Created",
]


def export_retention(run: Run, store: ArtifactStore) -> Dict[str, Any]:
    """
    Build the retention manifest of a run.

    Lists every sealed artifact with its retention class and deadline, next
    to the gate verdicts of the stage that produced it, for compliance
    review.
    """
    artifacts = store.list(run.run_id)
    return {
        "run_id": run.run_id,
        "pipeline": run.pipeline,
        "build_number": run.build_number,
        "status": run.status.value,
        "generated_at": utc_now().isoformat(),
        "stages": [
            {
                "stage": name,
                "status": result.status.value,
                "error_kind": result.error_kind,
                "reason": result.reason,
                "gate_results": [g.to_dict() for g in result.gate_results],
                "artifacts": [a.to_dict() for a in artifacts if a.stage == name],
            }
            for name, result in run.stages.items()
        ],
    }


def manifest_rows(run: Run, store: ArtifactStore) -> List[List[Any]]:
    rows = []
    for artifact in store.list(run.run_id):
        stage = run.stages.get(artifact.stage)
        rows.append([
            run.run_id,
            artifact.stage,
            stage.status.value if stage else "",
            artifact.name,
            artifact.media_type,
            artifact.retention.value,
            artifact.retain_until,
            artifact.size,
            artifact.hash,
            artifact.created_at,
        ])
    return rows


def export_retention_csv(run: Run, store: ArtifactStore) -> str:
    """Retention manifest as CSV text, one row per artifact."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    writer.writerows(manifest_rows(run, store))
    return buffer.getvalue()


def export_csv(run: Run, store: ArtifactStore, output_path: str):
    """Write the retention manifest CSV to a file."""
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_COLUMNS)
        writer.writerows(manifest_rows(run, store))
