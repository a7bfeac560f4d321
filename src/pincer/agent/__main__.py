"""Entry point for ``python -m pincer.agent`` (runs inside the sandbox)."""

import logging
import sys

from pincer.agent.harness import main

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    sys.exit(main())
