"""
Entry point for running gatewayd via `python -m gatewayd`.

`serve` (the default) starts the FastAPI server with uvicorn. The other
commands run one step of the startup sequence and exit.
"""

import argparse
import logging
import sys

import uvicorn

from .config import config


def main(argv=None):
    """Run the gatewayd server or a one-shot command."""
    parser = argparse.ArgumentParser(prog="gatewayd")
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "boot", "hydrate", "restore", "sync"],
    )
    args = parser.parse_args(argv)

    if args.command == "serve":
        uvicorn.run(
            "gatewayd.main:app",
            host=config.host,
            port=config.port,
            reload=False,
        )
        return 0

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    from . import backup, hydrator, startup
    from .exceptions import GatewayLaunchFailed
    from .models import initialize_db

    initialize_db()
    if args.command == "boot":
        try:
            process = startup.boot()
        except GatewayLaunchFailed as e:
            logging.getLogger("gatewayd").error(str(e))
            return 1
        print(f"Gateway running with PID {process.pid} on port {process.port}")
    elif args.command == "hydrate":
        selection = hydrator.hydrate_file()
        print(f"Primary model: {selection.primary}")
    elif args.command == "restore":
        print("Restored" if backup.restore() else "Nothing restored")
    elif args.command == "sync":
        return 0 if backup.push() else 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
