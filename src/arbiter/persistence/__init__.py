"""Persistence for Arbiter: SQLAlchemy Core schema and the async store."""

from arbiter.persistence.schema import metadata
from arbiter.persistence.store import ArbiterStore

__all__ = ["ArbiterStore", "metadata"]
