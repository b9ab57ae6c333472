"""Entry point for running the gateway via ``python -m app``."""

import uvicorn

from app.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.port,
        proxy_headers=True,
        timeout_keep_alive=65,
    )
