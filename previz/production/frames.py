from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from previz.errors import NotFoundError, ValidationError

from .models import FrameHistoryVersion, FrameOrderEntry
from .store import StudioStore

logger = logging.getLogger(__name__)


@dataclass
class FrameHistoryStore:
    """Versioned image history per (project_id, shot_number) with a single active version."""

    store: StudioStore
    _key_locks: "weakref.WeakValueDictionary[Tuple[int, int], Any]" = field(default_factory=weakref.WeakValueDictionary, repr=False)
    _registry_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def key_lock(self, project_id: int, shot_number: int) -> Any:
        """
        Per-(project, shot number) lock. Take it before `store.transaction()` when nesting.
        Entries drop out of the registry once no caller holds the lock.
        """
        key = (int(project_id), int(shot_number))
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._key_locks[key] = lock
            return lock

    def create_version(
        self,
        project_id: int,
        shot_number: int,
        image_url: str,
        prompt: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> FrameHistoryVersion:
        if not image_url:
            raise ValidationError("image_url is required")
        if self.store.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)

        with self.key_lock(project_id, shot_number):
            with self.store.transaction():
                version_number = self.store.max_version_number(project_id, shot_number) + 1
                self.store.deactivate_versions(project_id, shot_number)
                version = self.store.insert_version(
                    project_id=project_id,
                    shot_number=shot_number,
                    version_number=version_number,
                    image_url=image_url,
                    prompt=prompt,
                    notes=notes,
                )
        logger.info("Frame history project=%s shot=%s -> v%s", project_id, shot_number, version_number)
        return version

    def list_history(self, project_id: int, shot_number: int) -> List[FrameHistoryVersion]:
        return self.store.list_versions(project_id, shot_number)

    def active_version(self, project_id: int, shot_number: int) -> Optional[FrameHistoryVersion]:
        return self.store.get_active_version(project_id, shot_number)

    def activate_version(self, project_id: int, shot_number: int, version_number: int) -> FrameHistoryVersion:
        """Revert to an earlier version without creating a new one."""
        with self.key_lock(project_id, shot_number):
            with self.store.transaction():
                existing = {v.version_number for v in self.store.list_versions(project_id, shot_number)}
                if version_number not in existing:
                    raise NotFoundError("FrameHistoryVersion", f"{project_id}/{shot_number}/v{version_number}")
                self.store.deactivate_versions(project_id, shot_number)
                self.store.set_version_active(project_id, shot_number, version_number)
                version = self.store.get_active_version(project_id, shot_number)
        logger.info("Frame history project=%s shot=%s activated v%s", project_id, shot_number, version_number)
        return version


OrderInput = Union[FrameOrderEntry, Mapping[str, Any]]


@dataclass
class FrameOrderStore:
    """Caller-controlled display order, stored independently from shot numbering."""

    store: StudioStore

    def set_order(self, project_id: int, entries: Iterable[OrderInput]) -> List[FrameOrderEntry]:
        if self.store.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)
        normalized = [self._coerce(project_id, e) for e in entries]
        self.store.replace_frame_order(project_id, normalized)
        logger.info("Frame order project=%s replaced with %d entries", project_id, len(normalized))
        return sorted(normalized, key=lambda e: (e.display_order, e.shot_number))

    def get_order(self, project_id: int) -> List[FrameOrderEntry]:
        return self.store.list_frame_order(project_id)

    @staticmethod
    def _coerce(project_id: int, entry: OrderInput) -> FrameOrderEntry:
        if isinstance(entry, FrameOrderEntry):
            return FrameOrderEntry(project_id, entry.shot_number, entry.display_order)
        try:
            shot_number = entry.get("shot_number", entry.get("shotNumber"))
            display_order = entry.get("display_order", entry.get("displayOrder"))
            return FrameOrderEntry(project_id, int(shot_number), int(display_order))
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid frame order entry: {entry!r}") from e
