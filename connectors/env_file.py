"""
Write a discovered connection id back to the local ``.env`` file.

The connection id is the only state this app keeps between runs, and it
lives in caller-managed storage, never in-process.
"""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import set_key

logger = logging.getLogger(__name__)


def write_connection_id(connection_id: str, env_path: str = ".env", key: str = "CONNECTION_ID") -> Path:
    """Create or update ``key=connection_id`` in ``env_path``."""
    path = Path(env_path)
    path.touch(exist_ok=True)
    set_key(str(path), key, connection_id, quote_mode="never")
    logger.info("Wrote %s to %s", key, path)
    return path
