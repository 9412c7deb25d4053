from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

from .api_server import app as api_app, settings


logger = logging.getLogger(__name__)

app: FastAPI = api_app


def run() -> None:
    logging.basicConfig(
        level=settings.app.log_level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Starting botdash API on %s:%d", settings.api.host, settings.api.port)
    uvicorn.run(app, host=settings.api.host, port=settings.api.port, log_level=settings.app.log_level.lower())


if __name__ == "__main__":
    run()
