"""Helpers for database connection strings.

Tortoise ORM picks its backend from the URL scheme (``sqlite://`` or
``asyncpg://``). Deployments usually hand us SQLAlchemy-style or plain
PostgreSQL DSNs, so these helpers normalize them before ``Tortoise.init``.
"""

from __future__ import annotations


def to_postgres_dsn(url: str) -> str:
    """Normalize a SQLAlchemy-style URL into a plain PostgreSQL DSN.

    ``postgresql+psycopg2://`` becomes ``postgresql://`` and ``asyncpg://``
    is converted back to ``postgresql://``.
    """

    if url.startswith("postgresql+"):
        return "postgresql://" + url.split("://", 1)[1]
    if url.startswith("asyncpg://"):
        return "postgresql://" + url[len("asyncpg://") :]
    return url


def to_tortoise_dsn(url: str) -> str:
    """Convert a database URL to the scheme Tortoise expects.

    PostgreSQL variants map to ``asyncpg://``; ``sqlite+aiosqlite://`` is
    reduced to ``sqlite://``. Anything else is returned unchanged.
    """

    if url.startswith("sqlite+"):
        return "sqlite://" + url.split("://", 1)[1]

    url = to_postgres_dsn(url)
    if url.startswith("postgresql://"):
        return "asyncpg://" + url[len("postgresql://") :]
    if url.startswith("postgres://"):
        return "asyncpg://" + url[len("postgres://") :]
    return url
