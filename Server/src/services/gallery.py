"""
Saved-model gallery on top of an external ordered-list store.

The store itself is an opaque collaborator that only supports push,
delete-by-index and iteration. Writes are read-modify-write: concurrent
writers are not sequenced and the last write wins.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol

logger = logging.getLogger("rigforge-server.gallery")

DEFAULT_GALLERY_LIMIT = 20


class ListStore(Protocol):
    """Ordered list collaborator (e.g. a shared room storage list)."""

    def push(self, item: Dict[str, Any]) -> None: ...

    def delete(self, index: int) -> None: ...

    def __iter__(self) -> Iterator[Dict[str, Any]]: ...

    def __len__(self) -> int: ...


class InMemoryListStore:
    """Process-local ListStore."""

    def __init__(self, items: Optional[List[Dict[str, Any]]] = None):
        self._items: List[Dict[str, Any]] = list(items or [])

    def push(self, item: Dict[str, Any]) -> None:
        self._items.append(dict(item))

    def delete(self, index: int) -> None:
        del self._items[index]

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter([dict(item) for item in self._items])

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class GalleryEntry:
    """Compact summary of a finished generation."""
    prompt: str
    model_url: str
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    animations: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "prompt": self.prompt,
            "modelUrl": self.model_url,
            "timestamp": self.timestamp,
        }
        if self.animations:
            data["animations"] = dict(self.animations)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GalleryEntry":
        return cls(
            prompt=data.get("prompt", ""),
            model_url=data.get("modelUrl") or data.get("model_url", ""),
            timestamp=int(data.get("timestamp") or 0),
            animations=dict(data.get("animations") or {}),
        )


class Gallery:
    """Most-recent-first, URL-unique, capped list of saved models."""

    def __init__(self, store: ListStore, limit: int = DEFAULT_GALLERY_LIMIT):
        if limit < 1:
            raise ValueError("Gallery limit must be >= 1")
        self.store = store
        self.limit = limit

    def add(self, entry: GalleryEntry) -> List[GalleryEntry]:
        """Insert at the front, dropping older entries with the same URL."""
        existing = self.list()
        updated = [entry] + [e for e in existing if e.model_url != entry.model_url]
        updated = updated[: self.limit]

        while len(self.store) > 0:
            self.store.delete(len(self.store) - 1)
        for item in updated:
            self.store.push(item.to_dict())

        logger.info(f"[Gallery] Saved {entry.model_url[:80]} ({len(updated)} entries)")
        return updated

    def list(self) -> List[GalleryEntry]:
        return [GalleryEntry.from_dict(item) for item in self.store]

    def delete(self, model_url: str) -> bool:
        """Remove the entry with this URL. Returns False when absent."""
        for index, item in enumerate(self.store):
            if GalleryEntry.from_dict(item).model_url == model_url:
                self.store.delete(index)
                logger.info(f"[Gallery] Deleted {model_url[:80]}")
                return True
        return False
