import logging
from typing import Any, Dict, Optional

from flask import Flask

from shipgate.config import Config
from shipgate.events import EventBus
from shipgate.routes import main_bp, secrets_bp
from shipgate.runtime import build_runtime
from shipgate.services import RunWorker
from shipgate.sse import SSEManager

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def create_app(test_config: Optional[Dict[str, Any]] = None, start_worker: bool = True) -> Flask:
    """
    Create the shipgate API application.

    Args:
        test_config: Overrides for Config values
        start_worker: Run triggered pipelines on a background worker (and
            resume unfinished runs). When False, runs execute inline.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)
    Config.init_app(app)

    sse_manager = SSEManager()
    runtime = build_runtime(app.config, event_bus=EventBus(sse_manager=sse_manager))

    app.sse_manager = sse_manager
    app.runtime = runtime
    app.run_service = runtime.service
    app.pipeline_loader = runtime.loader
    app.secret_store = runtime.secret_store

    if start_worker:
        worker = RunWorker(runtime.service, workers=app.config.get("RUN_WORKERS", 2))
        runtime.service.worker = worker
        app.run_worker = worker
        worker.start(app)
        runtime.reaper.start()

    app.register_blueprint(main_bp)
    app.register_blueprint(secrets_bp)

    logger.info(f"shipgate {__version__} API ready")
    return app
