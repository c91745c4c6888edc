"""HTTP API for triggering, inspecting and aborting runs."""

import logging
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from shipgate.errors import ArtifactNotFound, ArtifactStoreUnavailable, DefinitionError
from shipgate.exports import export_retention, export_retention_csv
from shipgate.sse.stream import STREAM_END_EVENTS, format_keepalive, format_sse_message

logger = logging.getLogger(__name__)

main_bp = Blueprint("main", __name__)
secrets_bp = Blueprint("secrets", __name__, url_prefix="/api/secrets")


@main_bp.route("/health")
def health_check() -> Any:
    return "OK", 200


@main_bp.route("/api/pipelines", methods=["GET"])
def list_pipelines() -> Any:
    pipelines = current_app.run_service.list_pipelines()
    return jsonify({"pipelines": pipelines, "count": len(pipelines)}), 200


@main_bp.route("/api/pipelines/<name>/runs", methods=["POST"])
def trigger_run(name: str) -> Any:
    """
    Trigger a run of a pipeline.

    Body (optional):
        {
            "variables": {"GIT_REF": "release/2.4"},
            "definition": {...}   # inline pipeline definition named <name>
        }

    Returns:
        202: Run accepted (queued)
        201: Run executed inline (no background worker)
        400: Invalid definition or variables
        404: Unknown pipeline
    """
    data = request.get_json(silent=True) or {}
    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        return jsonify({"error": "variables must be an object"}), 400

    service = current_app.run_service
    try:
        definition = None
        if data.get("definition") is not None:
            definition = current_app.pipeline_loader.load_from_dict(data["definition"])
        run = service.trigger(name, {str(k): str(v) for k, v in variables.items()}, definition=definition)
    except KeyError:
        return jsonify({"error": f"Unknown pipeline '{name}'"}), 404
    except DefinitionError as e:
        return jsonify({"error": e.message, "kind": e.kind.value}), 400

    status_code = 201 if run.is_terminal else 202
    return jsonify(run.to_dict()), status_code


@main_bp.route("/api/runs", methods=["GET"])
def list_runs() -> Any:
    runs = current_app.run_service.list_runs(pipeline=request.args.get("pipeline"))
    return jsonify({"runs": runs, "count": len(runs)}), 200


@main_bp.route("/api/runs/<run_id>/abort", methods=["POST"])
def abort_run(run_id: str) -> Any:
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") or "aborted via API"
    service = current_app.run_service

    if service.get_run(run_id) is None:
        return jsonify({"error": "Run not found"}), 404
    if not service.abort(run_id, reason):
        return jsonify({"error": "Run already finished"}), 409
    return jsonify({"run_id": run_id, "message": "Abort requested"}), 202


@main_bp.route("/api/runs/<run_id>/artifacts", methods=["GET"])
def run_artifacts(run_id: str) -> Any:
    """Retention manifest of a run (``?format=csv`` for CSV)."""
    service = current_app.run_service
    run = service.get_run(run_id)
    if run is None:
        return jsonify({"error": "Run not found"}), 404

    try:
        if request.args.get("format") == "csv":
            filename = run_id.replace("#", "-")
            return Response(
                export_retention_csv(run, service.store),
                mimetype="text/csv",
                headers={"Content-Disposition": f"attachment; filename={filename}-artifacts.csv"},
            )
        return jsonify(export_retention(run, service.store)), 200
    except ArtifactStoreUnavailable as e:
        logger.error(f"Artifact index unavailable for {run_id}: {e.message}")
        return jsonify({"error": e.message}), 503


@main_bp.route("/api/runs/<run_id>/events", methods=["GET"])
def run_events(run_id: str) -> Any:
    """Stream a run's progress as Server-Sent Events."""
    service = current_app.run_service
    run = service.get_run(run_id)
    if run is None:
        return jsonify({"error": "Run not found"}), 404

    sse_manager = current_app.sse_manager
    keepalive_seconds = current_app.config.get("SSE_KEEPALIVE_SECONDS", 15.0)

    def generate():
        yield format_sse_message("snapshot", run.to_dict())
        if run.is_terminal:
            return

        connection = sse_manager.connect(run_id)
        try:
            while True:
                events = connection.get_events(timeout=keepalive_seconds)
                if not events:
                    yield format_keepalive()
                    continue
                for event in events:
                    yield format_sse_message(event["event"], event["data"])
                    if event["event"] in STREAM_END_EVENTS:
                        return
        finally:
            sse_manager.disconnect(run_id, connection.client_id)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@main_bp.route("/api/runs/<run_id>", methods=["GET"])
def get_run(run_id: str) -> Any:
    run = current_app.run_service.get_run(run_id)
    if run is None:
        return jsonify({"error": "Run not found"}), 404
    return jsonify(run.to_dict()), 200


@main_bp.route("/api/artifacts/<digest>", methods=["GET"])
def get_artifact(digest: str) -> Any:
    try:
        data = current_app.run_service.store.get(digest)
    except ArtifactNotFound:
        return jsonify({"error": "Artifact not found"}), 404
    except ArtifactStoreUnavailable as e:
        logger.error(f"Failed to read artifact {digest}: {e.message}")
        return jsonify({"error": e.message}), 503
    return Response(data, mimetype="application/octet-stream")


# ----------------------------------------------------------------------
# Secrets (local backend only)
# ----------------------------------------------------------------------

def _secret_store():
    return getattr(current_app, "secret_store", None)


@secrets_bp.route("", methods=["GET"])
def list_secrets() -> Any:
    """List stored scopes and field names (never values)."""
    store = _secret_store()
    if store is None:
        return jsonify({"error": "Secrets are managed by an external backend"}), 404
    scopes = store.list_scopes()
    return jsonify({"secrets": scopes, "count": len(scopes)}), 200


@secrets_bp.route("/<scope>", methods=["PUT"])
def store_secret(scope: str) -> Any:
    """
    Store secret fields for a scope.

    Body:
        {"username": "ci-bot", "password": "..."}
    """
    store = _secret_store()
    if store is None:
        return jsonify({"error": "Secrets are managed by an external backend"}), 404
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return jsonify({"error": "Request body must be an object of field -> value"}), 400

    store.store(scope, {str(k): str(v) for k, v in data.items()})
    return jsonify({"scope": scope, "fields": sorted(data)}), 201


@secrets_bp.route("/<scope>", methods=["DELETE"])
def delete_secret(scope: str) -> Any:
    store = _secret_store()
    if store is None:
        return jsonify({"error": "Secrets are managed by an external backend"}), 404
    store.delete(scope)
    return jsonify({"scope": scope, "message": "Secret deleted"}), 200
