import queue
import threading

import pytest

from ndagent.pathfinder.client import PathfinderError
from ndagent.pathfinder.frame import Frame, FrameType, decode_frame, encode_frame
from ndagent.pathfinder.stream import (
    MAX_CHUNK_SIZE,
    StreamClosedError,
    StreamManager,
)


class FakeClient:
    def __init__(self):
        self.handler = None
        self.sent = []
        self.fail = False
        self._lock = threading.Lock()

    def on_frame(self, handler):
        self.handler = handler

    def send_frame(self, data):
        if self.fail:
            raise PathfinderError("not connected")
        with self._lock:
            self.sent.append(decode_frame(data))


def frame_bytes(kind, stream_id, data=b""):
    return encode_frame(Frame(type=kind, stream_id=stream_id, data=data))


def open_stream(manager, stream_id, service="ssh"):
    received = queue.Queue()
    manager.on_new_stream(received.put)
    manager.handle_frame(frame_bytes(FrameType.OPEN, stream_id, service.encode()))
    return received.get(timeout=2)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def manager(client):
    return StreamManager(client)


def test_manager_registers_frame_handler(client, manager):
    assert client.handler == manager.handle_frame


def test_open_sends_ack_and_notifies_handler(client, manager):
    stream = open_stream(manager, 7)
    assert stream.id == 7
    assert stream.service_name == "ssh"
    assert [(f.type, f.stream_id, f.data) for f in client.sent] == [
        (FrameType.ACK, 7, b"")
    ]
    assert manager.active_stream_count() == 1


def test_open_without_handler_closes_stream(client, manager):
    manager.handle_frame(frame_bytes(FrameType.OPEN, 3, b"ssh"))
    assert [f.type for f in client.sent] == [FrameType.ACK, FrameType.CLOSE]
    assert manager.active_stream_count() == 0


def test_ack_failure_closes_stream_without_handler(client, manager):
    received = queue.Queue()
    manager.on_new_stream(received.put)
    client.fail = True
    manager.handle_frame(frame_bytes(FrameType.OPEN, 4, b"ssh"))
    assert manager.active_stream_count() == 0
    assert received.empty()


def test_data_is_read_in_order(manager):
    stream = open_stream(manager, 1)
    manager.handle_frame(frame_bytes(FrameType.DATA, 1, b"first"))
    manager.handle_frame(frame_bytes(FrameType.DATA, 1, b"second"))
    assert stream.read() == b"first"
    assert stream.read() == b"second"


def test_partial_read_keeps_pending(manager):
    stream = open_stream(manager, 1)
    manager.handle_frame(frame_bytes(FrameType.DATA, 1, b"hello world"))
    assert stream.read(5) == b"hello"
    assert stream.read() == b" world"


def test_data_for_unknown_stream_is_ignored(client, manager):
    manager.handle_frame(frame_bytes(FrameType.DATA, 99, b"lost"))
    assert client.sent == []
    assert manager.active_stream_count() == 0


def test_malformed_frame_is_ignored(client, manager):
    manager.handle_frame(b"\x01\x00")
    assert client.sent == []
    assert manager.active_stream_count() == 0


def test_write_splits_into_chunks(client, manager):
    stream = open_stream(manager, 2)
    data = bytes(range(256)) * 300
    assert stream.write(data) == len(data)
    frames = client.sent[1:]
    assert len(frames) > 1
    assert all(f.type == FrameType.DATA and f.stream_id == 2 for f in frames)
    assert all(len(f.data) <= MAX_CHUNK_SIZE for f in frames)
    assert b"".join(f.data for f in frames) == data


def test_write_after_close_raises(manager):
    stream = open_stream(manager, 2)
    stream.close()
    with pytest.raises(StreamClosedError):
        stream.write(b"late")


def test_remote_close(client, manager):
    calls = []
    manager.on_all_streams_closed(lambda: calls.append(True))
    stream = open_stream(manager, 5)
    manager.handle_frame(frame_bytes(FrameType.CLOSE, 5))
    assert stream.is_closed()
    assert stream.wait_closed(0)
    assert stream.read() == b""
    assert manager.active_stream_count() == 0
    assert calls == [True]
    assert [f.type for f in client.sent] == [FrameType.ACK]


def test_remote_close_unblocks_reader(manager):
    stream = open_stream(manager, 6)
    results = []
    reader = threading.Thread(target=lambda: results.append(stream.read()))
    reader.start()
    manager.handle_frame(frame_bytes(FrameType.CLOSE, 6))
    reader.join(timeout=2)
    assert not reader.is_alive()
    assert results == [b""]


def test_local_close_sends_close_frame_once(client, manager):
    calls = []
    manager.on_all_streams_closed(lambda: calls.append(True))
    stream = open_stream(manager, 8)
    stream.close()
    stream.close()
    closes = [f for f in client.sent if f.type == FrameType.CLOSE]
    assert [f.stream_id for f in closes] == [8]
    assert calls == [True]
    assert stream.read() == b""


def test_close_for_unknown_stream_without_history_does_not_fire(manager):
    calls = []
    manager.on_all_streams_closed(lambda: calls.append(True))
    manager.handle_frame(frame_bytes(FrameType.CLOSE, 5))
    assert calls == []


def test_close_all(client, manager):
    calls = []
    manager.on_all_streams_closed(lambda: calls.append(True))
    first = open_stream(manager, 1)
    second = open_stream(manager, 2, "webadmin")
    manager.close_all()
    assert first.is_closed() and second.is_closed()
    assert manager.active_stream_count() == 0
    assert {f.stream_id for f in client.sent if f.type == FrameType.CLOSE} == {1, 2}
    assert calls == [True]


def test_wait_closed_times_out_while_open(manager):
    stream = open_stream(manager, 9)
    assert stream.wait_closed(0.01) is False
    assert not stream.is_closed()


def test_data_after_remote_close_is_discarded(client, manager):
    stream = open_stream(manager, 10)
    manager.handle_frame(frame_bytes(FrameType.CLOSE, 10))
    manager.handle_frame(frame_bytes(FrameType.DATA, 10, b"late"))
    assert stream.read() == b""
    assert [f.type for f in client.sent] == [FrameType.ACK]