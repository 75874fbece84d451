"""Shared fixtures: a scripted camera provider and MJPEG socket helpers."""

import re
import socket
import threading
import time

import pytest

from netlens.camera import (
    CameraDevice,
    CameraProvider,
    CaptureBuffer,
    ConfigurationFailed,
    DeviceDisconnected,
    DeviceUnavailable,
)
from netlens.models import Facing, Resolution, name_devices
from netlens.server import FrameBroadcastServer
from netlens.session import CaptureSession


class FakeDevice(CameraDevice):
    """Produces tiny fake JPEG payloads and records every call."""

    def __init__(self, descriptor, provider):
        super().__init__(descriptor)
        self.provider = provider
        self.configured = []
        self.requests = []
        self.count = 0
        self.closed = False

    def supported_resolutions(self):
        return list(self.provider.resolutions)

    def configure(self, resolution):
        if self.provider.configure_error is not None:
            raise self.provider.configure_error
        self.configured.append(resolution)

    def acquire_latest(self, request):
        if self.closed:
            raise DeviceDisconnected("closed")
        if self.provider.unplugged.is_set():
            raise DeviceDisconnected("unplugged")
        if self.provider.hang.is_set():
            self.provider.unhang.wait(10)
        time.sleep(0.005)

        self.requests.append(request)
        self.count += 1
        data = b"\xff\xd8" + f"{self.descriptor.id}-{self.count}".encode() + b"\xff\xd9"
        self.provider.log.append(("capture", data))
        return CaptureBuffer(data, on_release=lambda: self.provider.log.append(("release", data)))

    def close(self):
        self.closed = True
        self.provider.log.append(("close", self.descriptor.id))


class FakeProvider(CameraProvider):
    """
    Camera provider driven by the test.

    Set configure_error or open_error to make those steps fail, unplugged to
    make captures raise DeviceDisconnected, and hang to block captures (or
    opens, with hang_open) until unhang is set.
    """

    name = "fake"

    def __init__(self, devices=None, resolutions=None):
        if devices is None:
            devices = name_devices([("0", Facing.BACK, 90), ("1", Facing.FRONT, 270)])
        self.devices = devices
        self.resolutions = [Resolution(1280, 720, "HD"), Resolution(640, 480, "VGA")] if resolutions is None else resolutions
        self.opened = []
        self.log = []
        self.configure_error = None
        self.open_error = None
        self.hang_open = False
        self.unplugged = threading.Event()
        self.hang = threading.Event()
        self.unhang = threading.Event()

    def list_devices(self):
        return list(self.devices)

    def supported_resolutions(self, device_id):
        if self.find_device(device_id) is None:
            return []
        return list(self.resolutions)

    def open_device(self, device_id):
        if self.hang_open:
            self.unhang.wait(10)
        if self.open_error is not None:
            raise self.open_error
        descriptor = self.find_device(device_id)
        if descriptor is None:
            raise DeviceUnavailable(f"no device {device_id}")
        device = FakeDevice(descriptor, self)
        self.opened.append(device)
        return device

    @property
    def open_handles(self):
        return [d for d in self.opened if not d.closed]


class MjpegReader:
    """Reads a multipart MJPEG response from a raw socket."""

    def __init__(self, sock):
        self.sock = sock
        self.buffer = b""

    def _fill(self):
        chunk = self.sock.recv(65536)
        if not chunk:
            raise ConnectionError("stream closed")
        self.buffer += chunk

    def read_until(self, marker):
        while marker not in self.buffer:
            self._fill()
        end = self.buffer.index(marker) + len(marker)
        data, self.buffer = self.buffer[:end], self.buffer[end:]
        return data

    def read_exact(self, size):
        while len(self.buffer) < size:
            self._fill()
        data, self.buffer = self.buffer[:size], self.buffer[size:]
        return data

    def read_headers(self):
        return self.read_until(b"\r\n\r\n")

    def read_part(self):
        """Return (part headers, payload) of the next frame."""
        headers = self.read_until(b"\r\n\r\n")
        match = re.search(rb"Content-Length: (\d+)\r\n", headers)
        assert match is not None, headers
        return headers, self.read_exact(int(match.group(1)))

    def read_frame(self):
        return self.read_part()[1]

    def wait_closed(self, timeout=5.0):
        """True once the server has closed the connection."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                if not self.sock.recv(65536):
                    return True
            except socket.timeout:
                continue
            except OSError:
                return True
        return False

    def close(self):
        self.sock.close()


def open_stream(port, read_headers=True, timeout=5.0):
    """Connect, send a GET and optionally consume the response headers."""
    sock = socket.create_connection(("127.0.0.1", port), timeout=timeout)
    sock.sendall(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    reader = MjpegReader(sock)
    if read_headers:
        reader.read_headers()
    return reader


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def server():
    server = FrameBroadcastServer(host="127.0.0.1", frame_interval_ms=10, send_timeout=2.0)
    yield server
    server.stop()


@pytest.fixture
def make_session():
    """Factory for sessions bound to localhost; all are stopped on teardown."""
    sessions = []

    def factory(provider, stream_config=None, **kwargs):
        kwargs.setdefault("start_timeout", 5.0)
        kwargs.setdefault("stop_timeout", 2.0)
        session = CaptureSession(
            provider,
            stream_config=stream_config,
            port=0,
            server=FrameBroadcastServer(host="127.0.0.1", frame_interval_ms=10, send_timeout=2.0),
            **kwargs
        )
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        session.stop()


@pytest.fixture
def blocked_port():
    """A localhost port that already has a listener."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()
