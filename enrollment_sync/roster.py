"""
Upstream roster access.

A RosterSource returns every identity eligible for enrollment in the
configured event scope. Selection then collapses identities sharing an
invite so that a SECONDARY (guest) identity wins over a PRIMARY one.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar

import requests
from pydantic import ValidationError

from .schemas.roster_schemas import Identity

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_NAME_LENGTH = 50


class RosterError(Exception):
    """Raised when the upstream roster cannot be read; aborts the cycle."""


# =============================================================================
# Helpers
# =============================================================================

def split_name(full_name: Optional[str]):
    """First name and last surname, with placeholders for missing parts."""
    parts = (full_name or "").split()
    if not parts:
        return "Usuario", "Sem Nome"
    if len(parts) == 1:
        return parts[0], "Sem Sobrenome"
    return parts[0], parts[-1]


def format_name_for_device(full_name: Optional[str]) -> str:
    """'Maria da Silva Souza' -> 'Maria Souza', capped at 50 characters."""
    first, last = split_name(full_name)
    return f"{first} {last}".strip()[:MAX_NAME_LENGTH]


def select_by_invite(identities: Iterable[Identity]) -> List[Identity]:
    """
    Keep one identity per invite_id.

    The higher-priority kind wins (SECONDARY over PRIMARY); on equal
    priority the first one seen is kept. Output preserves first-seen
    invite order.
    """
    selected: Dict[str, Identity] = {}
    for identity in identities:
        current = selected.get(identity.invite_id)
        if current is None or identity.kind.priority > current.kind.priority:
            selected[identity.invite_id] = identity
    return list(selected.values())


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _parse_identities(rows: Iterable[dict], origin: str) -> List[Identity]:
    identities = []
    for row in rows:
        try:
            identities.append(Identity.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping invalid roster row from {origin}: {e.errors()[0]['msg']}")
    return identities


def _is_newer(identity: Identity, since: datetime) -> bool:
    if identity.updated_at is None:
        return False
    updated = identity.updated_at
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return updated > since


# =============================================================================
# Sources
# =============================================================================

class RosterSource(ABC):
    """Read-only view of the upstream identity store."""

    @abstractmethod
    def fetch(self, since: Optional[datetime] = None) -> List[Identity]:
        """
        Return eligible identities.

        With `since`, only identities modified after that instant.
        """


class JsonFileRosterSource(RosterSource):
    """Roster exported to a JSON file: a list of rows or {"identities": [...]}."""

    def __init__(self, path: Path, event_id: Optional[str] = None):
        self.path = Path(path)
        self.event_id = event_id

    def fetch(self, since: Optional[datetime] = None) -> List[Identity]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RosterError(f"Cannot read roster file {self.path}: {e}") from e

        if isinstance(data, dict):
            if self.event_id and data.get("event_id") not in (None, self.event_id):
                raise RosterError(
                    f"Roster file is for event {data.get('event_id')}, expected {self.event_id}"
                )
            data = data.get("identities", [])

        identities = _parse_identities(data, str(self.path))
        if since is not None:
            identities = [i for i in identities if _is_newer(i, since)]
        logger.info(f"Roster file {self.path}: {len(identities)} identities")
        return identities


class HttpRosterSource(RosterSource):
    """Roster served over HTTP as a JSON list."""

    def __init__(
        self,
        url: str,
        event_id: Optional[str] = None,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.event_id = event_id
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def fetch(self, since: Optional[datetime] = None) -> List[Identity]:
        params = {}
        if self.event_id:
            params["event_id"] = self.event_id
        if since is not None:
            params["updated_since"] = since.isoformat()

        try:
            response = self._session.get(self.url, params=params, timeout=self.timeout_seconds)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise RosterError(f"Roster request failed: {e}") from e
        except ValueError as e:
            raise RosterError(f"Roster response is not JSON: {e}") from e

        if isinstance(data, dict):
            data = data.get("identities", [])
        identities = _parse_identities(data, self.url)
        logger.info(f"Roster {self.url}: {len(identities)} identities")
        return identities
