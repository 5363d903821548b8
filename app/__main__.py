import logging

import uvicorn

from app.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port)
