"""Concurrency gate: per-scope admission with a process-wide in-flight count."""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Set

from .errors import AdmissionRejected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Task:
    id: str
    scope: str
    queue_depth: int = 0


class ConcurrencyGate:
    """Tracks in-flight requests per scope (e.g. a chat channel) and globally.

    Only the per-scope ceiling blocks admission; the global count is reported
    back as queue depth. Admission and release never suspend, so they are
    atomic with respect to other coroutines.
    """

    def __init__(self, max_concurrency: int = 0):
        self.max_concurrency = max_concurrency
        self.scopes: Dict[str, Set[str]] = {}
        self.global_tasks: Set[str] = set()

    @property
    def pending(self) -> int:
        return len(self.global_tasks)

    def in_scope(self, scope: str) -> int:
        return len(self.scopes.get(scope, ()))

    def try_admit(self, scope: str) -> Task:
        store = self.scopes.setdefault(scope, set())
        if self.max_concurrency and len(store) >= self.max_concurrency:
            logger.warning(f"[Gate] Rejected request for scope={scope} ({len(store)}/{self.max_concurrency} running)")
            raise AdmissionRejected(self.pending)
        task = Task(id=uuid.uuid4().hex[:8], scope=scope, queue_depth=self.pending)
        store.add(task.id)
        self.global_tasks.add(task.id)
        logger.debug(f"[Gate] Admitted {task.id} scope={scope} queue_depth={task.queue_depth}")
        return task

    def release(self, task: Task) -> bool:
        """Drop the task from both sets. Returns False if it was already gone."""
        store = self.scopes.get(task.scope)
        released = task.id in self.global_tasks
        if store is not None:
            store.discard(task.id)
            if not store:
                del self.scopes[task.scope]
        self.global_tasks.discard(task.id)
        if released:
            logger.debug(f"[Gate] Released {task.id} scope={task.scope}")
        return released

    @contextmanager
    def slot(self, scope: str) -> Iterator[Task]:
        task = self.try_admit(scope)
        try:
            yield task
        finally:
            self.release(task)
