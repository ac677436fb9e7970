"""
probeshell Log Capture (Agent Side)

The host's log callback is the standard logging machinery: RemoteLogHandler
sits on the root logger for the agent's lifetime and turns every record into
a LogRecord for the relay. LogBuffer is the bounded record store the
inspection window reads from.
"""

import enum
import logging
import threading
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Iterable, List, Optional

MAX_RECORDS = 1000


class LogType(enum.Enum):
    LOG = "Log"
    WARNING = "Warning"
    ERROR = "Error"
    EXCEPTION = "Exception"

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogType":
        if record.exc_info and record.exc_info[0] is not None:
            return cls.EXCEPTION
        if record.levelno >= logging.ERROR:
            return cls.ERROR
        if record.levelno >= logging.WARNING:
            return cls.WARNING
        return cls.LOG


@dataclass
class LogRecord:
    type: LogType
    message: str
    stack_trace: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_logging(cls, record: logging.LogRecord) -> "LogRecord":
        stack = ""
        if record.exc_info and record.exc_info[0] is not None:
            stack = "".join(traceback.format_exception(*record.exc_info))
        elif record.stack_info:
            stack = record.stack_info
        return cls(
            type=LogType.from_record(record),
            message=record.getMessage(),
            stack_trace=stack,
            timestamp=datetime.fromtimestamp(record.created),
        )

    def matches(self, search: str, include_stack: bool = True) -> bool:
        needle = search.lower()
        if needle in self.message.lower():
            return True
        return include_stack and needle in self.stack_trace.lower()


class LogBuffer:
    """Most recent log records, oldest evicted first."""

    def __init__(self, capacity: int = MAX_RECORDS):
        self._records: Deque[LogRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, record: LogRecord) -> None:
        with self._lock:
            self._records.append(record)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def records(self) -> List[LogRecord]:
        with self._lock:
            return list(self._records)

    def filter(self, types: Optional[Iterable[LogType]] = None, search: str = "",
               include_stack: bool = True) -> List[LogRecord]:
        """Records whose type is enabled and whose text contains search (case-insensitive)."""
        enabled = set(types) if types is not None else set(LogType)
        return [
            r for r in self.records()
            if r.type in enabled and (not search or r.matches(search, include_stack))
        ]


class RemoteLogHandler(logging.Handler):
    """
    Forward every log record to a sink callable.

    Records emitted while the sink is running on the same thread (e.g. a
    send failure being logged) are not forwarded again.
    """

    def __init__(self, sink: Callable[[LogRecord], None],
                 buffer: Optional[LogBuffer] = None, level: int = logging.NOTSET):
        super().__init__(level)
        self.sink = sink
        self.buffer = buffer
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self._local, 'busy', False):
            return
        self._local.busy = True
        try:
            entry = LogRecord.from_logging(record)
            if self.buffer is not None:
                self.buffer.append(entry)
            self.sink(entry)
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False
