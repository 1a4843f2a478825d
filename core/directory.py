"""
Creator directory - read-only view of registered creators.

Registration lives elsewhere; the agent only reads. The JSON store is a
list of creator objects (see Creator.from_dict) kept at data/creators.json.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from core.models import Creator

logger = logging.getLogger("blinktip.directory")


class CreatorDirectory(ABC):

    @abstractmethod
    def list_verified(self) -> list[Creator]:
        """Verified creators, newest registration first."""

    @abstractmethod
    def get_by_slug(self, slug: str) -> Optional[Creator]:
        ...


class InMemoryCreatorDirectory(CreatorDirectory):

    def __init__(self, creators: Optional[list[Creator]] = None):
        self._creators: list[Creator] = list(creators or [])

    def list_verified(self) -> list[Creator]:
        verified = [c for c in self._creators if c.verified]
        # sorted() is stable: equal created_at keeps insertion order
        return sorted(verified, key=lambda c: c.created_at, reverse=True)

    def get_by_slug(self, slug: str) -> Optional[Creator]:
        for c in self._creators:
            if c.slug == slug:
                return c
        return None


class JsonCreatorDirectory(InMemoryCreatorDirectory):
    """Reloads the file on every listing so edits show up without a restart."""

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__()

    def _reload(self):
        if not self.path.exists():
            logger.warning(f"Creator directory not found: {self.path}")
            self._creators = []
            return
        with open(self.path, encoding="utf-8") as f:
            raw = json.load(f)
        creators = []
        for entry in raw.get("creators", raw) if isinstance(raw, dict) else raw:
            try:
                creators.append(Creator.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed creator entry: {e}")
        self._creators = creators

    def list_verified(self) -> list[Creator]:
        self._reload()
        return super().list_verified()

    def get_by_slug(self, slug: str) -> Optional[Creator]:
        self._reload()
        return super().get_by_slug(slug)
