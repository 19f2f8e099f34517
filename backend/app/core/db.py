import logging
import os

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from backend.app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def sqlite_url(path: str) -> str:
    if path.startswith("sqlite:"):
        return path
    if path in ("", ":memory:"):
        return "sqlite://"
    return f"sqlite:///{path}"


def ensure_sqlite_dir(path: str):
    # The metadata file lives under ./data by default, which may not exist yet
    directory = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
        logger.info(f"Created metadata directory {directory}")


def build_engine(store_type: str, connection_url: str) -> Engine:
    """Create the SQLAlchemy engine backing the metadata store."""
    if store_type == "sqlite":
        url = sqlite_url(connection_url)
        connect_args = {"check_same_thread": False}
        if url == "sqlite://":
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool, echo=False)
        if not connection_url.startswith("sqlite:"):
            ensure_sqlite_dir(connection_url)
        return create_engine(url, connect_args=connect_args, echo=False)

    if store_type == "postgresql":
        url = connection_url
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]
        return create_engine(url, pool_pre_ping=True, echo=False)

    raise ConfigurationError(f"unsupported metadata store type: {store_type}")
