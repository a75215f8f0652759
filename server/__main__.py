"""CLI entrypoint for running the portal API server."""
from __future__ import annotations

import argparse
import atexit
import os

from config import JOB_STORE_PATH

from . import build_engine, create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the hosting portal job API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument(
        "--store",
        default=JOB_STORE_PATH,
        help="Job store JSON file; empty keeps jobs in memory (default: %(default)s)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    args = parser.parse_args()

    engine = build_engine(store_path=args.store or None)
    atexit.register(engine.shutdown)
    app = create_app(engine)

    if not args.debug or os.environ.get("WERKZEUG_RUN_MAIN") == "true":
        print(f"Server running: jobs API on http://{args.host}:{args.port}", flush=True)

    # The reloader would start a second engine over the same store file.
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False, threaded=True)


if __name__ == "__main__":  # pragma: no cover
    main()
