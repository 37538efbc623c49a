"""
MySQL access for the ``STORE_BACKEND=mysql`` stores.

Queries go through one mysql-connector-python pool and run in a worker
thread, so a slow database never blocks the debate loops. Connection
drops are retried a few times with exponential backoff; every other
database error propagates to the caller.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import mysql.connector
from mysql.connector import pooling

from .config import _env_float, _env_int

# Server gone away, lost connection, too many connections
RETRYABLE_ERRNOS = frozenset({1040, 2003, 2006, 2013, 2055})

_pool: Optional[pooling.MySQLConnectionPool] = None
_pool_lock = threading.Lock()


@dataclass(frozen=True)
class DbConfig:
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "root"
    password: str = ""
    database: str = "stancestream"
    pool_size: int = 10
    retries: int = 3
    retry_backoff: float = 0.15

    @classmethod
    def from_env(cls) -> "DbConfig":
        return cls(
            host=os.getenv("DB_HOST", "127.0.0.1"),
            port=_env_int("DB_PORT", 3306),
            user=os.getenv("DB_USER", "root"),
            password=os.getenv("DB_PASSWORD", ""),
            database=os.getenv("DB_NAME", "stancestream"),
            pool_size=max(1, min(32, _env_int("DB_POOL_SIZE", 10))),
            retries=max(1, min(8, _env_int("DB_QUERY_RETRIES", 3))),
            retry_backoff=max(0.01, _env_float("DB_RETRY_BACKOFF_SEC", 0.15)),
        )

    def connect_args(self, with_database: bool = True) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "autocommit": True,
        }
        if with_database:
            args["database"] = self.database
        return args


def _connection(config: DbConfig):
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = pooling.MySQLConnectionPool(
                pool_name="stancestream",
                pool_size=config.pool_size,
                pool_reset_session=True,
                **config.connect_args(),
            )
        return _pool.get_connection()


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, mysql.connector.Error) and getattr(exc, "errno", None) in RETRYABLE_ERRNOS


def _run(config: DbConfig, query: str, params: Sequence[Any], fetch: bool) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    for attempt in range(config.retries):
        try:
            conn = _connection(config)
        except mysql.connector.Error as exc:
            if attempt + 1 >= config.retries or not is_retryable(exc):
                raise
            time.sleep(min(1.0, config.retry_backoff * (2 ** attempt)))
            continue
        try:
            cursor = conn.cursor(dictionary=True)
            try:
                cursor.execute(query, tuple(params))
                rows = cursor.fetchall() if fetch else []
                return rows, cursor.lastrowid
            finally:
                cursor.close()
        except mysql.connector.Error as exc:
            if attempt + 1 >= config.retries or not is_retryable(exc):
                raise
            time.sleep(min(1.0, config.retry_backoff * (2 ** attempt)))
        finally:
            conn.close()
    raise RuntimeError("unreachable: retry loop exited without a result")


async def fetch_all(query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
    rows, _ = await asyncio.to_thread(_run, DbConfig.from_env(), query, params, True)
    return rows


async def execute(query: str, params: Sequence[Any] = ()) -> Optional[int]:
    """Run a write statement and return the cursor's ``lastrowid``."""
    _, last_id = await asyncio.to_thread(_run, DbConfig.from_env(), query, params, False)
    return last_id


def _init_db_sync(config: DbConfig) -> None:
    conn = mysql.connector.connect(**config.connect_args(with_database=False))
    try:
        cursor = conn.cursor()
        cursor.execute(
            f"CREATE DATABASE IF NOT EXISTS `{config.database}` "
            "DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        cursor.execute(f"USE `{config.database}`")
        schema = Path(__file__).with_name("db_schema.sql").read_text(encoding="utf-8")
        for statement in schema.split(";"):
            if statement.strip():
                cursor.execute(statement)
        cursor.close()
    finally:
        conn.close()


async def init_db() -> None:
    """Create the database and tables if they do not already exist."""
    await asyncio.to_thread(_init_db_sync, DbConfig.from_env())


def safe_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default
