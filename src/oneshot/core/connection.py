"""SQL Server connectivity via SQLAlchemy + pyodbc."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"


class ConnectError(Exception):
    """Raised when a SQL Server instance cannot be reached or logged into."""


@dataclass
class ConnectionSettings:
    """How to reach an instance. Credentials are passed through untouched."""

    driver: str = DEFAULT_DRIVER
    trust_server_certificate: bool = True
    timeout: int = 15
    username: Optional[str] = None
    password: Optional[str] = None


def build_url(instance: str, settings: ConnectionSettings, database: str = "master") -> URL:
    """
    Build a ``mssql+pyodbc`` URL for the given instance.

    Windows integrated authentication is used unless a username is configured.
    """
    query: dict[str, str] = {"driver": settings.driver}
    if settings.trust_server_certificate:
        query["TrustServerCertificate"] = "yes"
    if not settings.username:
        query["Trusted_Connection"] = "yes"
    return URL.create(
        "mssql+pyodbc",
        username=settings.username or None,
        password=settings.password or None,
        host=instance,
        database=database,
        query=query,
    )


def connect(instance: str, settings: Optional[ConnectionSettings] = None) -> Connection:
    """
    Open a live connection to a SQL Server instance.

    Args:
        instance: Host name of the instance (e.g. "SQLHOST1")
        settings: Driver and credential settings (defaults if None)

    Returns:
        An open SQLAlchemy Connection

    Raises:
        ConnectError: If the connection attempt fails
    """
    settings = settings or ConnectionSettings()
    url = build_url(instance, settings)
    logger.debug("Connecting to %s with driver '%s'", instance, settings.driver)
    try:
        engine = create_engine(
            url,
            poolclass=NullPool,
            connect_args={"timeout": settings.timeout},
        )
        conn = engine.connect()
    except SQLAlchemyError as exc:
        raise ConnectError(f"could not connect to {instance}: {exc}") from exc
    logger.info("Connected to %s", instance)
    return conn


def list_databases(conn: Any) -> set[str]:
    """Return the names of all databases on the connected instance."""
    rows = conn.execute(text("SELECT name FROM sys.databases")).scalars().all()
    return {str(name) for name in rows}
