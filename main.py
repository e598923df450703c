"""
Application entry point

    python main.py            # serve the API
    python main.py init-db    # run migrations to head
"""

import os
import sys

import uvicorn
from app.core.config import settings


def serve() -> None:
    # Hosting platforms set PORT
    port = int(os.getenv("PORT", settings.PORT))
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=port,
        reload=settings.DEBUG
    )


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "init-db":
        from app.db.init_db import init_db
        import logging

        logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        sys.exit(0 if init_db() else 1)
    serve()
