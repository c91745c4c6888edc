#!/usr/bin/env python3

import logging
import os
import sys

from shipgate import create_app
from shipgate.config import Config

if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app()

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", 7766))
    debug = os.environ.get("FLASK_ENV") == "development"

    print(f"Starting shipgate on http://{host}:{port}")
    print("Trigger runs with POST /api/pipelines/<name>/runs")
    print("Press CTRL+C to stop the server")

    try:
        # The reloader would start a second RunWorker resuming the same runs
        app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
    except KeyboardInterrupt:
        print("\nShutting down shipgate...")
        sys.exit(0)
