import logging
import sys
import time

import ray
from ray import serve

from fleet.serve import service as serve_service
from fleet.worker import service as agent_service

logger = logging.getLogger(__name__)


def main() -> None:
    """Start the control plane (default) or a host agent on this machine.

    python main.py           # Ray Serve control plane, blocks until Ctrl+C
    python main.py agent     # host agent (uvicorn)
    """
    role = sys.argv[1] if len(sys.argv) > 1 else "serve"
    if role == "agent":
        agent_service.main()
        return
    if role != "serve":
        raise SystemExit(f"unknown role: {role} (expected 'serve' or 'agent')")

    serve_service.main()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down Ray Serve...")
        serve.shutdown()
        ray.shutdown()


if __name__ == "__main__":
    main()
