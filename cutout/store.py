from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .contracts import TERMINAL_STATUSES, AssetJob, AssetStatus

Mutator = Callable[[AssetJob], None]


class AssetCollection(Protocol):
    """What the orchestrator needs from whoever owns the items."""

    def pending_items(self) -> List[AssetJob]: ...

    def get(self, item_id: str) -> Optional[AssetJob]: ...

    def update(self, item_id: str, mutator: Mutator) -> bool: ...


class AssetStore:
    """
    In-memory asset collection.

    Every item has its own lock: update() on one id never waits on another id. The
    registry lock only guards membership and is never held while a mutator runs.
    Readers get deep copies, so nothing outside the store holds a live item.
    """

    def __init__(self, items: Iterable[AssetJob] = ()):
        self._registry_lock = threading.Lock()
        self._items: Dict[str, AssetJob] = {}
        self._locks: Dict[str, threading.Lock] = {}
        for item in items:
            self._insert(item)

    def _insert(self, item: AssetJob) -> None:
        with self._registry_lock:
            self._items[item.id] = item
            self._locks[item.id] = threading.Lock()

    def _entry(self, item_id: str):
        with self._registry_lock:
            return self._items.get(item_id), self._locks.get(item_id)

    def add(self, item: AssetJob) -> AssetJob:
        self._insert(item)
        return item

    def add_sources(self, sources: Iterable[str]) -> List[AssetJob]:
        return [self.add(AssetJob(source=str(s))) for s in sources]

    def remove(self, item_id: str) -> None:
        with self._registry_lock:
            self._items.pop(item_id, None)
            self._locks.pop(item_id, None)

    def get(self, item_id: str) -> Optional[AssetJob]:
        item, lock = self._entry(item_id)
        if item is None:
            return None
        with lock:
            return item.model_copy(deep=True)

    def all_items(self) -> List[AssetJob]:
        with self._registry_lock:
            ids = list(self._items.keys())
        return [copy for copy in (self.get(i) for i in ids) if copy is not None]

    def pending_items(self) -> List[AssetJob]:
        return [item for item in self.all_items() if item.status == AssetStatus.PENDING]

    def update(self, item_id: str, mutator: Mutator) -> bool:
        """Atomic read-modify-write of one item. Unknown ids are ignored."""
        item, lock = self._entry(item_id)
        if item is None:
            return False
        with lock:
            mutator(item)
        return True

    def reset_statuses(self) -> None:
        """Items left mid-flight (e.g. after a cancel or crash) go back to pending."""

        def _reset(item: AssetJob) -> None:
            if item.status == AssetStatus.PROCESSING:
                item.status = AssetStatus.PENDING
                item.processing_progress = 0.0

        for item in self.all_items():
            self.update(item.id, _reset)

    def requeue(self, statuses=TERMINAL_STATUSES) -> int:
        """Move items in `statuses` back to pending for another run. Returns how many moved."""
        wanted = set(statuses)
        moved = 0

        def _requeue(item: AssetJob) -> None:
            item.status = AssetStatus.PENDING
            item.processing_progress = 0.0
            item.error_message = None

        for item in self.all_items():
            if item.status in wanted:
                self.update(item.id, _requeue)
                moved += 1
        return moved

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in AssetStatus}
        for item in self.all_items():
            out[item.status.value] += 1
        return out

    def save(self, path: str) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        data = [item.model_dump(mode="json") for item in self.all_items()]
        p.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    @classmethod
    def load(cls, path: str) -> "AssetStore":
        p = Path(path)
        if not p.exists():
            return cls()
        content = p.read_text(encoding="utf-8")
        data = json.loads(content) if content.strip() else []
        return cls(AssetJob.model_validate(x) for x in data)
