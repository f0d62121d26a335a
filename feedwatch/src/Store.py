"""Store: SQLAlchemy engine and transactional session scope.

Every evaluation unit (one pair, one source, one participant, one window)
runs inside its own ``session()`` block, so a failure rolls back only that
unit and the natural-key upserts stay idempotent on replay.

.. code-block:: python

    >>> store = Store("sqlite://")
    >>> store.create_all()
    >>> with store.session() as session:
    ...     session.add(IngestRunModel(label="datasource", started_at=0.0))
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .Schema import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///feedwatch.db"


class Store:
    """Owns the engine and hands out short-lived sessions.

    :ivar url: SQLAlchemy database URL.
    :ivar engine: Bound engine instance.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> None:
        """Initialize the store.

        :param url: SQLAlchemy URL (``sqlite://`` for an in-memory database).
        :param echo: Echo SQL statements to the log.
        """
        self.url = url
        kwargs: dict = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # A single shared connection keeps the in-memory database alive.
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self._session_maker = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    def create_all(self) -> None:
        """Create all tables and indexes that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.debug(f"Schema ensured on {self.engine.url.render_as_string(hide_password=True)}")

    def drop_all(self) -> None:
        """Drop every table (tests only)."""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session = self._session_maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
