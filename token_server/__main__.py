"""
Entry point for running the token server.

Usage:
    python -m token_server

Serves POST /api/rtc-token on TOKEN_SERVER_HOST:TOKEN_SERVER_PORT (default 0.0.0.0:8000).
"""
import uvicorn

from logging_setup import setup_logging
from .config import get_config

if __name__ == "__main__":
    setup_logging(level="INFO", use_json=True)
    config = get_config()

    uvicorn.run(
        "token_server.server:app",
        host=config.host,
        port=config.port,
        log_level="info"
    )
