"""ASGI entrypoint: `uvicorn main:app` or `python main.py`."""
from __future__ import annotations

import logging

import uvicorn

from dmm.app import create_app
from dmm.settings import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port)
