"""
Content Catalog and Access Control

Collaborators consulted once at session start: the catalog supplies the
accrual rate, access control gates who may start a session.
"""

from typing import Dict, Iterable, Optional, Protocol, Set, Tuple
import structlog

logger = structlog.get_logger()


class ContentNotFound(KeyError):
    """Raised when the catalog has no entry for a content id."""
    pass


class ContentCatalog(Protocol):
    def get_rate(self, content_id: str) -> int:
        """Accrual rate in minor units per minute."""
        ...


class AccessControl(Protocol):
    def has_access(self, content_id: str, viewer: Optional[str]) -> bool:
        ...


class StaticCatalog:
    """Catalog backed by a dict of content id -> rate per minute."""

    def __init__(self, rates: Optional[Dict[str, int]] = None):
        self._rates: Dict[str, int] = dict(rates or {})

    def register(self, content_id: str, rate_per_minute: int) -> None:
        if rate_per_minute < 0:
            raise ValueError("rate_per_minute must be non-negative")
        self._rates[content_id] = rate_per_minute
        logger.info("content_registered", content_id=content_id, rate_per_minute=rate_per_minute)

    def get_rate(self, content_id: str) -> int:
        try:
            return self._rates[content_id]
        except KeyError:
            raise ContentNotFound(content_id)

    def __contains__(self, content_id: str) -> bool:
        return content_id in self._rates


class AllowListAccessControl:
    """Grants access per (content id, viewer) pair; '*' grants to everyone."""

    WILDCARD = "*"

    def __init__(self, grants: Optional[Iterable[Tuple[str, str]]] = None):
        self._grants: Set[Tuple[str, str]] = set(grants or ())

    def grant(self, content_id: str, viewer: str) -> None:
        self._grants.add((content_id, viewer))
        logger.info("access_granted", content_id=content_id, viewer=viewer)

    def revoke(self, content_id: str, viewer: str) -> None:
        self._grants.discard((content_id, viewer))
        logger.info("access_revoked", content_id=content_id, viewer=viewer)

    def has_access(self, content_id: str, viewer: Optional[str]) -> bool:
        if (content_id, self.WILDCARD) in self._grants:
            return True
        return viewer is not None and (content_id, viewer) in self._grants
