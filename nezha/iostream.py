"""Relaying of byte streams between a dashboard user and an agent."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

_BUFFER_SIZE = 1024 * 1024


class ReadWriteCloser(Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    def close(self) -> Any: ...


class StreamNotFound(LookupError):
    """No stream is registered under the given id."""


class StreamTimeout(TimeoutError):
    """A side of the stream did not connect in time."""


@dataclass
class StreamContext:
    """The two ends of one relayed stream."""

    user_io: Optional[ReadWriteCloser] = None
    agent_io: Optional[ReadWriteCloser] = None
    connected: threading.Condition = field(
        default_factory=threading.Condition, repr=False
    )


def _copy(dst: ReadWriteCloser, src: ReadWriteCloser) -> None:
    while True:
        chunk = src.read(_BUFFER_SIZE)
        if not chunk:
            return
        view = memoryview(chunk)
        while view:
            written = dst.write(bytes(view))
            if written is None:
                break
            view = view[written:]


class StreamHub:
    """Pairs user and agent connections by stream id and pipes them together."""

    def __init__(self) -> None:
        self._streams: dict[str, StreamContext] = {}
        self._lock = threading.RLock()

    def create_stream(self, stream_id: str) -> None:
        with self._lock:
            self._streams[stream_id] = StreamContext()

    def get_stream(self, stream_id: str) -> StreamContext:
        with self._lock:
            try:
                return self._streams[stream_id]
            except KeyError:
                raise StreamNotFound("stream not found") from None

    def close_stream(self, stream_id: str) -> None:
        """Close both ends and forget the stream; unknown ids are ignored."""
        with self._lock:
            stream = self._streams.pop(stream_id, None)
        if stream is None:
            return
        if stream.user_io is not None:
            stream.user_io.close()
        if stream.agent_io is not None:
            stream.agent_io.close()

    def user_connected(self, stream_id: str, user_io: ReadWriteCloser) -> None:
        stream = self.get_stream(stream_id)
        with stream.connected:
            stream.user_io = user_io
            stream.connected.notify_all()

    def agent_connected(self, stream_id: str, agent_io: ReadWriteCloser) -> None:
        stream = self.get_stream(stream_id)
        with stream.connected:
            stream.agent_io = agent_io
            stream.connected.notify_all()

    def start_stream(self, stream_id: str, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for both ends, then relay until one ends."""
        stream = self.get_stream(stream_id)
        with stream.connected:
            stream.connected.wait_for(
                lambda: stream.user_io is not None and stream.agent_io is not None,
                timeout=timeout,
            )
            user_io, agent_io = stream.user_io, stream.agent_io

        if user_io is None and agent_io is None:
            raise StreamTimeout("timeout: no connection established")
        if user_io is None:
            raise StreamTimeout("timeout: user connection not established")
        if agent_io is None:
            raise StreamTimeout("timeout: agent connection not established")

        done = threading.Event()
        errors: list[BaseException] = []

        def pump(dst: ReadWriteCloser, src: ReadWriteCloser) -> None:
            try:
                _copy(dst, src)
            except Exception as exc:  # noqa: BLE001 - reported to the caller
                errors.append(exc)
            finally:
                done.set()

        for dst, src in ((user_io, agent_io), (agent_io, user_io)):
            threading.Thread(target=pump, args=(dst, src), daemon=True).start()

        done.wait()
        if errors:
            raise errors[0]