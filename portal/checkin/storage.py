"""Durable client storage for the current visitor id."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

VISITOR_ID_KEY = "visitorId"


class VisitorIdStore(Protocol):
    """get/set/clear over a single opaque visitor id."""

    def get(self) -> Optional[int]: ...

    def set(self, visitor_id: int) -> None: ...

    def clear(self) -> None: ...


class MemoryVisitorIdStore:
    """Process-local store, used by tests and when no state directory is writable."""

    def __init__(self, visitor_id: Optional[int] = None) -> None:
        self._visitor_id = visitor_id

    def get(self) -> Optional[int]:
        return self._visitor_id

    def set(self, visitor_id: int) -> None:
        self._visitor_id = int(visitor_id)

    def clear(self) -> None:
        self._visitor_id = None


class FileVisitorIdStore:
    """JSON file store so a controller restart can resume the active visit."""

    def __init__(self, directory: Path, filename: str = "portal-session.json") -> None:
        self.path = Path(directory).expanduser() / filename

    def get(self) -> Optional[int]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("storage.get: cannot read %s - %s", self.path, exc)
            return None
        try:
            value = json.loads(raw).get(VISITOR_ID_KEY)
            return int(value) if value is not None else None
        except (ValueError, TypeError, AttributeError):
            logger.warning("storage.get: discarding corrupt session file %s", self.path)
            self.clear()
            return None

    def set(self, visitor_id: int) -> None:
        """Persist the id; a failed write is logged and the kiosk carries on without resumption."""
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps({VISITOR_ID_KEY: int(visitor_id)}), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.warning("storage.set: cannot persist visitor id %s to %s - %s", visitor_id, self.path, exc)
            return
        logger.debug("storage.set: visitor id %s persisted", visitor_id)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("storage.clear: cannot remove %s - %s", self.path, exc)


__all__ = ["VISITOR_ID_KEY", "VisitorIdStore", "MemoryVisitorIdStore", "FileVisitorIdStore"]
