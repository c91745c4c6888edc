"""Command-line interface.

    shipgate run pipeline.yaml --var GIT_REF=main
    shipgate run container_release          # preset name
    shipgate resume 'container_release#12'
    shipgate show 'container_release#12'
    shipgate export 'container_release#12' --csv
    shipgate reap
    shipgate secrets set registry username=ci password=...
    shipgate serve --port 7766
"""

import argparse
import json
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

from shipgate.config import Config
from shipgate.data_models import RunStatus
from shipgate.errors import ShipgateError
from shipgate.exports import export_retention, export_retention_csv
from shipgate.runtime import Runtime, build_runtime

logger = logging.getLogger("shipgate.cli")


def _parse_pairs(pairs: List[str], what: str) -> Dict[str, str]:
    values = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"{what} must be KEY=VALUE, got '{pair}'")
        values[key] = value
    return values


def _load_definition(runtime: Runtime, target: str):
    if os.path.exists(target):
        return runtime.loader.load_from_yaml(target)
    return runtime.loader.load_preset(target)


def _print_run(run) -> None:
    print(f"{run.run_id}  {run.status.value}{'  ' + run.reason if run.reason else ''}")
    for name, result in run.stages.items():
        line = f"  {result.status.value:<8} {name}"
        if result.reason:
            line += f"  ({result.reason})"
        print(line)


def cmd_run(runtime: Runtime, args) -> int:
    definition = _load_definition(runtime, args.pipeline)
    run = runtime.engine.create_run(definition, _parse_pairs(args.var, "--var"))
    print(f"Started {run.run_id}")

    def handle_interrupt(signum, frame):
        runtime.engine.abort(run.run_id, "interrupted")

    previous = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        run = runtime.engine.execute(definition, run=run)
    finally:
        signal.signal(signal.SIGINT, previous)

    _print_run(run)
    return 0 if run.status == RunStatus.SUCCEEDED else 1


def cmd_resume(runtime: Runtime, args) -> int:
    run = runtime.engine.resume(args.run_id)
    _print_run(run)
    return 0 if run.status == RunStatus.SUCCEEDED else 1


def cmd_show(runtime: Runtime, args) -> int:
    run = runtime.recorder.replay(args.run_id)
    if run is None:
        print(f"Unknown run {args.run_id}", file=sys.stderr)
        return 2
    if args.json:
        print(json.dumps(run.to_dict(), indent=2))
    else:
        _print_run(run)
    return 0


def cmd_export(runtime: Runtime, args) -> int:
    run = runtime.recorder.replay(args.run_id)
    if run is None:
        print(f"Unknown run {args.run_id}", file=sys.stderr)
        return 2
    if args.csv:
        output = export_retention_csv(run, runtime.store)
    else:
        output = json.dumps(export_retention(run, runtime.store), indent=2)

    if args.output:
        with open(args.output, "w", encoding="utf-8", newline="") as f:
            f.write(output)
        print(f"Wrote {args.output}")
    else:
        print(output)
    return 0


def cmd_reap(runtime: Runtime, args) -> int:
    removed = runtime.reaper.reap_once()
    print(f"Removed {len(removed)} expired artifact(s)")
    return 0


def cmd_secrets_set(runtime: Runtime, args) -> int:
    if runtime.secret_store is None:
        print("Secrets are managed by an external backend", file=sys.stderr)
        return 2
    values = _parse_pairs(args.values, "secret field")
    if not values:
        print("No fields given", file=sys.stderr)
        return 2
    runtime.secret_store.store(args.scope, values)
    print(f"Stored {len(values)} field(s) for scope '{args.scope}'")
    return 0


def cmd_serve(runtime: Optional[Runtime], args) -> int:
    from shipgate import create_app

    app = create_app()
    print(f"Starting shipgate on http://{args.host}:{args.port}")
    app.run(host=args.host, port=args.port, threaded=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipgate", description="Gated build pipeline engine")
    parser.add_argument("--log-level", default=Config.LOG_LEVEL, help="Logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a pipeline file or preset")
    run.add_argument("pipeline", help="Path to pipeline YAML or preset name")
    run.add_argument("--var", action="append", default=[], metavar="KEY=VALUE", help="Run variable")
    run.set_defaults(func=cmd_run)

    resume = sub.add_parser("resume", help="Continue an interrupted run")
    resume.add_argument("run_id")
    resume.set_defaults(func=cmd_resume)

    show = sub.add_parser("show", help="Show a run reconstructed from the run log")
    show.add_argument("run_id")
    show.add_argument("--json", action="store_true")
    show.set_defaults(func=cmd_show)

    export = sub.add_parser("export", help="Export a run's retention manifest")
    export.add_argument("run_id")
    export.add_argument("--csv", action="store_true", help="CSV instead of JSON")
    export.add_argument("-o", "--output", help="Write to file")
    export.set_defaults(func=cmd_export)

    reap = sub.add_parser("reap", help="Delete artifacts whose retention has elapsed")
    reap.set_defaults(func=cmd_reap)

    secrets = sub.add_parser("secrets", help="Manage local secrets")
    secrets_sub = secrets.add_subparsers(dest="secrets_command", required=True)
    secrets_set = secrets_sub.add_parser("set", help="Store secret fields for a scope")
    secrets_set.add_argument("scope")
    secrets_set.add_argument("values", nargs="+", metavar="FIELD=VALUE")
    secrets_set.set_defaults(func=cmd_secrets_set)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", 7766)))
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        runtime = None if args.func is cmd_serve else build_runtime()
        return args.func(runtime, args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except ShipgateError as e:
        logger.error(e.message)
        print(f"error: {e.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
