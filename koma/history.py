"""
Snapshot-based undo/redo for project content.

Only the content sub-tree (capture cursor and komas) is recorded. Session
settings such as audio, viewport, layers and name never enter the log.
"""
import copy
from dataclasses import dataclass, field
from typing import Callable, List

from koma.constants import HISTORY_CAPACITY
from koma.models import CaptureShot, Koma


@dataclass
class Snapshot:
    """Undoable part of a project."""
    capture_shot: CaptureShot = field(default_factory=CaptureShot)
    komas: List[Koma] = field(default_factory=list)

    def clone(self) -> "Snapshot":
        return copy.deepcopy(self)


class HistoryManager:
    """
    Bounded log of content snapshots.

    The last entry of the undo stack is always the current state, so undo
    is possible once at least two entries exist.
    """

    def __init__(self, read: Callable[[], Snapshot], write: Callable[[Snapshot], None],
                 capacity: int = HISTORY_CAPACITY):
        """
        Args:
            read: Returns the live undoable sub-tree (cloned here)
            write: Installs a snapshot into the document
            capacity: Maximum number of snapshots to keep
        """
        if capacity < 1:
            raise ValueError(f"History capacity must be at least 1, got {capacity}")
        self._read = read
        self._write = write
        self.capacity = capacity
        self._undo_stack: List[Snapshot] = []
        self._redo_stack: List[Snapshot] = []
        self._restoring = False
        self.clear()

    @property
    def is_restoring(self) -> bool:
        return self._restoring

    def _capture(self) -> Snapshot:
        return self._read().clone()

    def commit(self):
        """Record the current state. Ignored while an undo/redo is being applied."""
        if self._restoring:
            return

        self._undo_stack.append(self._capture())

        # Limit history size
        if len(self._undo_stack) > self.capacity:
            self._undo_stack.pop(0)

        # Clear redo stack when new state is recorded
        self._redo_stack.clear()

    def _restore(self, snapshot: Snapshot):
        self._restoring = True
        try:
            self._write(snapshot.clone())
        finally:
            self._restoring = False

    def undo(self) -> bool:
        """Step back one snapshot. Returns True if successful."""
        if not self.can_undo():
            return False

        self._redo_stack.append(self._undo_stack.pop())
        self._restore(self._undo_stack[-1])
        return True

    def redo(self) -> bool:
        """Step forward one snapshot. Returns True if successful."""
        if not self.can_redo():
            return False

        snapshot = self._redo_stack.pop()
        self._undo_stack.append(snapshot)
        self._restore(snapshot)
        return True

    def can_undo(self) -> bool:
        return len(self._undo_stack) > 1

    def can_redo(self) -> bool:
        return len(self._redo_stack) > 0

    def clear(self):
        """Discard the log; the current state becomes the only entry."""
        self._undo_stack = [self._capture()]
        self._redo_stack = []

    @property
    def size(self) -> int:
        return len(self._undo_stack)

    def current(self) -> Snapshot:
        return self._undo_stack[-1]
