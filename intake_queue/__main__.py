"""Entry point for the intake queue package.

Usage::

    python -m intake_queue api       # HTTP trigger surface (uvicorn)
    python -m intake_queue tick      # one periodic pass: reap, dispatch, classify
    python -m intake_queue reap      # only fail stale runs
    python -m intake_queue init-db   # create the tables
"""

from __future__ import annotations

import asyncio
import sys

import structlog
import uvicorn

from .config import AppConfig
from .logging import setup_logging

MODES = ("api", "tick", "reap", "init-db")

logger = structlog.get_logger()


async def _run_once(config: AppConfig, mode: str) -> None:
    from .db.engine import Database
    from .service import ImportService

    db = Database(config.database)
    try:
        if mode == "init-db":
            await db.create_all()
            logger.info("schema_created")
            return

        service = ImportService(config, db.session)
        await service.start()
        try:
            if mode == "tick":
                result = await service.tick()
                logger.info("tick_result", **result.model_dump(mode="json"))
            else:
                reaped = await service.reap()
                logger.info("reap_result", reaped=[str(r) for r in reaped])
        finally:
            await service.close()
    finally:
        await db.close()


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in MODES:
        print(f"Usage: python -m intake_queue <{'|'.join(MODES)}>", file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]
    config = AppConfig()
    setup_logging(json=config.log_json, level=config.log_level)

    if mode == "api":
        uvicorn.run(
            "intake_queue.app:create_app",
            factory=True,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
        )
    else:
        asyncio.run(_run_once(config, mode))


if __name__ == "__main__":
    main()
