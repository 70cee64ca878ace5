"""Run the queue API under uvicorn."""

from __future__ import annotations

import argparse

from lfgqueue.backend.config import load_settings
from lfgqueue.backend.log import setup_logging


def parse_args(default_host: str, default_port: int) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="LFG queue server")
    parser.add_argument("--host", default=default_host)
    parser.add_argument("--port", type=int, default=default_port)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args()


def main() -> int:
    settings = load_settings()
    args = parse_args(settings.host, settings.port)
    setup_logging("lfgqueue", verbose=args.verbose or settings.verbose)

    import uvicorn

    uvicorn.run("lfgqueue.backend.api:app", host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
