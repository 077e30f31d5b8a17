from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextvars import ContextVar
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol

# Per-task context: which target URL is this coroutine resolving right now?
_CURRENT_TARGET: ContextVar[Optional[str]] = ContextVar("_CURRENT_TARGET", default=None)

DEFAULT_CAPACITY = 5000


class EventRecorder(Protocol):
    def record(self, event: str, fields: Optional[Mapping[str, Any]] = None, level: str = "info") -> None:
        ...

    def error(self, event: str, exc: BaseException, fields: Optional[Mapping[str, Any]] = None) -> None:
        ...


class EventSink:
    """
    Bounded in-memory event log shared by concurrent requests.
    Appends never block on anything but the buffer lock; once ``capacity``
    entries are held the oldest are evicted.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(self, event: str, fields: Optional[Mapping[str, Any]] = None, level: str = "info") -> None:
        data = dict(fields or {})
        target = _CURRENT_TARGET.get()
        if target and "target" not in data:
            data["target"] = target
        entry = {"ts": time.time(), "level": level, "event": event, "data": data}
        with self._lock:
            self._entries.append(entry)

    def error(self, event: str, exc: BaseException, fields: Optional[Mapping[str, Any]] = None) -> None:
        data = dict(fields or {})
        data.update({"message": str(exc), "type": type(exc).__name__})
        self.record(event, data, level="error")

    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class NullSink:
    def record(self, event: str, fields: Optional[Mapping[str, Any]] = None, level: str = "info") -> None:
        return None

    def error(self, event: str, exc: BaseException, fields: Optional[Mapping[str, Any]] = None) -> None:
        return None


class _TargetFilter(logging.Filter):
    """Stamp ``record.target`` with the URL the current task is working on."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.target = _CURRENT_TARGET.get() or "-"
        return True


class LoggingExtension:
    def __init__(self, *, global_level: int = logging.INFO, buffer_capacity: int = DEFAULT_CAPACITY) -> None:
        self.global_level = global_level
        self.sink = EventSink(buffer_capacity)
        self._handler: Optional[logging.Handler] = None

        # Console formatter/handler on root
        self._install_console(self.global_level)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.addFilter(_TargetFilter())
        ch.setFormatter(logging.Formatter(
            fmt="%(levelname)s %(asctime)s %(name)s [%(target)s]: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(ch)
        self._handler = ch

    # ---------------- Context helpers ----------------

    @staticmethod
    def set_target_context(url: str):
        """
        Tag log lines and sink entries from this task with ``url``.
        Returns a token you must reset when done.
        """
        return _CURRENT_TARGET.set(url)

    @staticmethod
    def reset_target_context(token) -> None:
        _CURRENT_TARGET.reset(token)

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        if self._handler is not None:
            root = logging.getLogger()
            root.removeHandler(self._handler)
            self._handler.flush()
            self._handler.close()
            self._handler = None
