"""Programmatic uvicorn entry point for the key service.

Reads host and port from the loaded config (127.0.0.1:3000 by default) and
starts uvicorn with hardened connection limits.

Usage:
    python -m newsportal.run
    newsportal-keys              # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from newsportal.config import load_config

# Maximum number of concurrent connections (HTTP + WebSocket) accepted by uvicorn.
UVICORN_LIMIT_CONCURRENCY: int = 200

# OS-level TCP connection backlog queue size.
UVICORN_BACKLOG: int = 50

# HTTP keep-alive timeout in seconds.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the key service.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "newsportal.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
