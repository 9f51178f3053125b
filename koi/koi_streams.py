"""
Standard stream bindings for processes that have not been spawned yet.

A Stream says where one of a child's stdin/stdout/stderr connects: the
parent's own descriptor, /dev/null, or one end of an OS pipe. Pipe ends own
a descriptor in the parent process; that descriptor is released exactly once,
either right after the child that uses it has been created or when the
process it was bound to is dropped without being spawned.
"""
import asyncio
import os
from enum import Enum
from typing import Optional, Tuple

from koi.koi_datatypes import EngineInvariantViolation


class StreamKind(Enum):
    INHERIT = "inherit"
    NULL = "null"
    PIPE_READ = "pipe-read"
    PIPE_WRITE = "pipe-write"


class Stream:
    """One stdio binding. Pipe ends carry an owned file descriptor."""

    def __init__(self, kind: StreamKind, fd: Optional[int] = None):
        self.kind = kind
        self.fd = fd
        self._closed = False

    @classmethod
    def inherit(cls) -> 'Stream':
        return cls(StreamKind.INHERIT)

    @classmethod
    def null(cls) -> 'Stream':
        return cls(StreamKind.NULL)

    @classmethod
    def pipe(cls) -> Tuple['Stream', 'Stream']:
        """Creates a fresh OS pipe and returns its (read end, write end)."""
        r, w = os.pipe()
        return cls(StreamKind.PIPE_READ, r), cls(StreamKind.PIPE_WRITE, w)

    @property
    def is_pipe(self) -> bool:
        return self.kind in (StreamKind.PIPE_READ, StreamKind.PIPE_WRITE)

    @property
    def closed(self) -> bool:
        return self._closed

    def duplicate(self) -> 'Stream':
        """Returns an independently owned handle bound to the same target."""
        if self._closed:
            raise EngineInvariantViolation(f"cannot duplicate a released {self.kind.value} stream")
        if self.is_pipe:
            return Stream(self.kind, os.dup(self.fd))
        return Stream(self.kind)

    def to_stdio(self):
        """The value `asyncio.create_subprocess_exec` expects for this binding."""
        if self._closed:
            raise EngineInvariantViolation(f"{self.kind.value} stream used after release")
        match self.kind:
            case StreamKind.INHERIT:
                return None
            case StreamKind.NULL:
                return asyncio.subprocess.DEVNULL
            case _:
                return self.fd

    def close(self):
        """Releases the parent's descriptor. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self.is_pipe and self.fd is not None:
            os.close(self.fd)

    def __repr__(self) -> str:
        if self.is_pipe:
            return f"<Stream {self.kind.value} fd={self.fd}{' closed' if self._closed else ''}>"
        return f"<Stream {self.kind.value}>"
