"""Command line entry point that serves the workflow core API."""

import argparse
from typing import List, Optional

import uvicorn

from .config import load_config
from .factory import create_app


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the workflow core API server")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--host", default=None, help="Override WORKFLOW_ENGINE_HOST")
    parser.add_argument("--port", type=int, default=None, help="Override WORKFLOW_ENGINE_PORT")
    args = parser.parse_args(argv)

    config = load_config(args.env_file)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    app = create_app(config)
    uvicorn_config = config.get_uvicorn_config()
    uvicorn_config.pop("reload", None)
    uvicorn.run(app, **uvicorn_config)


if __name__ == "__main__":
    main()
