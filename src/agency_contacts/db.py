"""Database provisioning and connection pool management."""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

from agency_contacts.config import DatabaseConfig

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def db_params_from_url(database_url: str) -> dict[str, Any]:
    """Parse connection params from a libpq-style URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "postgres",
        "password": parsed.password or "postgres",
        "db_name": parsed.path.lstrip("/") or None,
        "ssl": sslmode,
    }


def db_params_from_env() -> dict[str, Any]:
    """Read DB connection params from environment variables.

    ``DATABASE_URL`` wins; otherwise the individual ``POSTGRES_*`` variables.
    """
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return db_params_from_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "postgres"),
        "password": os.environ.get("POSTGRES_PASSWORD", "postgres"),
        "db_name": os.environ.get("POSTGRES_DB"),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


class Database:
    """Manages the asyncpg connection pool and database provisioning."""

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @property
    def url(self) -> str:
        """libpq URL for this database, used by the migration runner."""
        user = quote(self.user, safe="")
        password = quote(self.password, safe="")
        url = f"postgresql://{user}:{password}@{self.host}:{self.port}/{self.db_name}"
        if self.ssl is not None:
            url = f"{url}?sslmode={self.ssl}"
        return url

    async def provision(self) -> None:
        """Create the database if it doesn't exist.

        Connects to the 'postgres' maintenance database to check for and
        optionally create the target database.
        """
        connect_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": "postgres",
        }
        if self.ssl is not None:
            connect_kwargs["ssl"] = self.ssl
        conn = await asyncpg.connect(**connect_kwargs)
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1",
                self.db_name,
            )
            if not exists:
                # Can't use parameterized query for CREATE DATABASE
                safe_name = self.db_name.replace('"', '""')
                await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
                logger.info("Created database: %s", self.db_name)
            else:
                logger.info("Database already exists: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Create and return a connection pool to the database."""
        pool_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            pool_kwargs["ssl"] = self.ssl
        self.pool = await asyncpg.create_pool(**pool_kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        """Create a Database from the [database] config section.

        An explicit ``url`` takes precedence; otherwise connection params come
        from the environment (see :func:`db_params_from_env`). The database
        name in a URL overrides ``config.name``.
        """
        params = db_params_from_url(config.url) if config.url else db_params_from_env()
        return cls(
            db_name=params["db_name"] or config.name,
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )
