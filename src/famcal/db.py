"""Database provisioning and the asyncpg pool behind the famcal stores."""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
MAINTENANCE_DB = "postgres"


def _ssl_mode(value: str | None) -> str | None:
    normalized = (value or "").strip().lower()
    if not normalized:
        return None
    if normalized not in _VALID_SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return normalized


def db_params_from_url(database_url: str) -> dict[str, Any]:
    """Connection params from a ``postgresql://`` URL; ``sslmode`` is read from the query."""
    parsed = urlparse(database_url)
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "famcal",
        "password": parsed.password or "famcal",
        "database": parsed.path.lstrip("/") or None,
        "ssl": _ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
    }


class Database:
    """One famcal database: provisioning, a connection pool and query proxies."""

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
        """libpq-style URL for alembic, which opens its own connection."""
        url = (
            f"postgresql://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{self.db_name}"
        )
        if self.ssl is not None:
            url = f"{url}?sslmode={self.ssl}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def provision(self) -> None:
        """Create the famcal database through the maintenance database if it is missing."""
        conn = await asyncpg.connect(**self._connect_kwargs(MAINTENANCE_DB))
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no bind parameters.
            safe_name = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        self.pool = await asyncpg.create_pool(
            **self._connect_kwargs(self.db_name),
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
        )
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    # -- Pool proxy methods ------------------------------------------------

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        return await self._require_pool().fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        return await self._require_pool().fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        return await self._require_pool().fetchval(query, *args, timeout=timeout)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        return await self._require_pool().execute(query, *args, timeout=timeout)

    @classmethod
    def _from_params(cls, params: dict[str, Any], db_name: str) -> Database:
        return cls(
            db_name=db_name,
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"],
        )

    @classmethod
    def from_url(cls, database_url: str, *, db_name: str | None = None) -> Database:
        """Database for ``famcal.db.url``; *db_name* overrides the URL path."""
        params = db_params_from_url(database_url)
        return cls._from_params(params, db_name or params["database"] or "famcal")

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        """Database from ``DATABASE_URL``, else the ``POSTGRES_*`` variables."""
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            return cls._from_params(db_params_from_url(database_url), db_name)
        params = {
            "host": os.environ.get("POSTGRES_HOST", "localhost"),
            "port": os.environ.get("POSTGRES_PORT", "5432"),
            "user": os.environ.get("POSTGRES_USER", "famcal"),
            "password": os.environ.get("POSTGRES_PASSWORD", "famcal"),
            "ssl": _ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        }
        return cls._from_params(params, db_name)
