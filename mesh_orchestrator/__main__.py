"""Command line entry point: ``python -m mesh_orchestrator [run|serve]``."""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from mesh_orchestrator.app import main as serve_api
from mesh_orchestrator.errors import BringUpFailedError, OrchestratorError
from mesh_orchestrator.orchestrator import Orchestrator
from mesh_orchestrator.settings import get_settings

logger = logging.getLogger("mesh_orchestrator")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-cloud cluster and mesh orchestrator")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "serve"),
        default="run",
        help="Run one orchestration pass (default) or serve the HTTP API",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_arguments(argv)
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        serve_api()
        return 0

    try:
        asyncio.run(Orchestrator(get_settings()).run())
    except BringUpFailedError as e:
        logger.error(str(e))
        return 1
    except OrchestratorError as e:
        logger.error(f"Run aborted: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
