import asyncio
import os
import pytest

from koi.koi_datatypes import EngineInvariantViolation
from koi.koi_streams import Stream, StreamKind


def test_inherit_and_null_map_to_subprocess_arguments():
    assert Stream.inherit().to_stdio() is None
    assert Stream.null().to_stdio() == asyncio.subprocess.DEVNULL
    assert not Stream.inherit().is_pipe


def test_pipe_ends_carry_descriptors():
    reader, writer = Stream.pipe()
    try:
        assert reader.kind is StreamKind.PIPE_READ
        assert writer.kind is StreamKind.PIPE_WRITE
        assert reader.to_stdio() == reader.fd
        assert writer.to_stdio() == writer.fd
        os.write(writer.fd, b"data")
        writer.close()
        assert os.read(reader.fd, 16) == b"data"
        # All write ends closed -> EOF
        assert os.read(reader.fd, 16) == b""
    finally:
        reader.close()
        writer.close()


def test_duplicate_pipe_end_is_independent():
    reader, writer = Stream.pipe()
    dup = writer.duplicate()
    try:
        assert dup.kind is StreamKind.PIPE_WRITE
        assert dup.fd != writer.fd
        writer.close()
        os.write(dup.fd, b"x")
        dup.close()
        assert os.read(reader.fd, 4) == b"x"
        assert os.read(reader.fd, 4) == b""
    finally:
        reader.close()


def test_duplicate_non_pipe_stream():
    dup = Stream.null().duplicate()
    assert dup.kind is StreamKind.NULL
    assert dup.fd is None


def test_close_is_idempotent():
    reader, writer = Stream.pipe()
    reader.close()
    reader.close()
    writer.close()
    assert reader.closed and writer.closed


def test_released_stream_cannot_be_used():
    reader, writer = Stream.pipe()
    writer.close()
    reader.close()
    with pytest.raises(EngineInvariantViolation):
        reader.duplicate()
    with pytest.raises(EngineInvariantViolation):
        writer.to_stdio()


def test_repr_shows_kind():
    assert "null" in repr(Stream.null())
    reader, writer = Stream.pipe()
    reader.close(); writer.close()
    assert "closed" in repr(reader)
