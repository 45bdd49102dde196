"""Run the sync API under uvicorn."""
from __future__ import annotations

import argparse
from typing import List, Optional

import uvicorn

from snapsplit.backend.utils.settings import settings


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SnapSplit sync server")
    parser.add_argument("--host", type=str, default=settings.SNAPSPLIT_HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.SNAPSPLIT_PORT, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    uvicorn.run(
        "snapsplit.backend.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
