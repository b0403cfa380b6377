"""
kickback.api.deps — FastAPI dependency injection
================================================
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import Engine

from kickback.config import WorkerConfig, load_worker_config
from kickback.database.engine import create_db_engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_worker_config() -> WorkerConfig:
    return load_worker_config()
