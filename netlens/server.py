"""
MJPEG broadcast server.

Accepts any HTTP request on its port and answers with an endless
multipart/x-mixed-replace stream. Frames are pushed in by the capture
session and written synchronously to every connected client:

    server = FrameBroadcastServer()
    server.start(8082)
    server.push_frame(Frame(jpeg_bytes))
    ...
    server.stop()

Each client gets its own handler thread that lives until the peer goes
away or a write fails. The client registry and the current frame share a
single lock, held for the whole fan-out, so every client sees frames in
push order with no duplicates.
"""

import select
import socket
import socketserver
import threading
from typing import List, Optional

from .models import Frame


BOUNDARY = "--boundarydonotcross"

RESPONSE_HEADERS = (
    "HTTP/1.1 200 OK\r\n"
    f"Content-Type: multipart/x-mixed-replace; boundary={BOUNDARY}\r\n"
    "Cache-Control: no-cache\r\n"
    "Access-Control-Allow-Origin: *\r\n"
    "Connection: keep-alive\r\n"
    "\r\n"
).encode("ascii")

# Stop reading request headers after this many bytes
MAX_REQUEST_BYTES = 16 * 1024


class StreamServerError(Exception):
    """Raised when the broadcast server fails."""
    pass


class BindError(StreamServerError):
    """The listening port could not be bound."""
    pass


class ClientIOError(StreamServerError):
    """A write to or read from one client connection failed."""
    pass


def encode_frame_part(payload: bytes) -> bytes:
    """Frame one JPEG as a multipart body part."""
    return (
        f"\r\n{BOUNDARY}\r\n"
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "\r\n"
    ).encode("ascii") + payload


class ClientConnection:
    """One accepted stream subscriber."""

    def __init__(self, sock: socket.socket, address, send_timeout: Optional[float]):
        self.sock = sock
        self.address = address
        self.frames_sent = 0
        self.closed = threading.Event()
        sock.settimeout(send_timeout)

    @property
    def name(self) -> str:
        if isinstance(self.address, tuple) and len(self.address) >= 2:
            return f"{self.address[0]}:{self.address[1]}"
        return str(self.address)

    def send(self, data: bytes):
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise ClientIOError(f"write to {self.name} failed: {e}") from e

    def send_frame(self, part: bytes):
        self.send(part)
        self.frames_sent += 1

    def read_request(self):
        """Read and discard the request line and headers."""
        received = b""
        while b"\r\n\r\n" not in received and len(received) < MAX_REQUEST_BYTES:
            try:
                chunk = self.sock.recv(4096)
            except OSError as e:
                raise ClientIOError(f"read from {self.name} failed: {e}") from e
            if not chunk:
                raise ClientIOError(f"{self.name} closed before sending a request")
            received += chunk

    def is_alive(self) -> bool:
        """
        Non-blocking liveness check.

        Anything the client sends after its request is drained and ignored;
        an orderly shutdown or socket error means the client is gone.
        """
        if self.closed.is_set():
            return False
        try:
            readable, _, _ = select.select([self.sock], [], [], 0)
            if not readable:
                return True
            return bool(self.sock.recv(4096))
        except (OSError, ValueError):
            return False

    def close(self):
        if self.closed.is_set():
            return
        self.closed.set()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self.sock.close()


class _StreamRequestHandler(socketserver.BaseRequestHandler):
    def handle(self):
        self.server.broadcaster._serve_client(self.request, self.client_address)


class _ThreadingStreamServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True
    block_on_close = False

    def __init__(self, address, broadcaster: "FrameBroadcastServer"):
        self.broadcaster = broadcaster
        super().__init__(address, _StreamRequestHandler)


class FrameBroadcastServer:
    """
    Streams the live frame sequence to every connected HTTP client.

    Args:
        host: Bind address
        frame_interval_ms: Liveness check cadence for idle connections
        send_timeout: Seconds a single client write may block before the
            client is treated as failed and dropped. Fan-out writes to
            clients one after another under the registry lock, so a stalled
            client delays every other client by up to this long on each
            push until it is dropped. Keep it a small multiple of the frame
            interval when slow viewers are expected.
    """

    def __init__(self, host: str = "0.0.0.0", frame_interval_ms: int = 33, send_timeout: Optional[float] = 5.0):
        self.host = host
        self.send_timeout = send_timeout
        self._interval = frame_interval_ms / 1000.0

        self._lock = threading.Lock()
        self._clients: List[ClientConnection] = []
        self._connections: set = set()
        self._current_frame: Optional[Frame] = None
        self._frames_pushed = 0

        self._tcp: Optional[_ThreadingStreamServer] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> Optional[int]:
        tcp = self._tcp
        if tcp is None:
            return None
        return tcp.server_address[1]

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    @property
    def current_frame(self) -> Optional[Frame]:
        return self._current_frame

    @property
    def frames_pushed(self) -> int:
        return self._frames_pushed

    @property
    def frame_interval_ms(self) -> int:
        return round(self._interval * 1000)

    def start(self, port: int):
        """
        Bind the port and start accepting clients.

        Raises:
            BindError: if the port is out of range or already in use
        """
        if self._running:
            print(f"[server] Already running on port {self.port}")
            return

        if not isinstance(port, int) or not 0 <= port <= 65535:
            raise BindError(f"Port {port!r} is out of range")

        try:
            tcp = _ThreadingStreamServer((self.host, port), self)
        except (OSError, OverflowError) as e:
            raise BindError(f"Cannot listen on {self.host}:{port}: {e}") from e

        with self._lock:
            self._tcp = tcp
            self._running = True
            self._frames_pushed = 0

        self._accept_thread = threading.Thread(
            target=tcp.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"netlens-accept-{self.port}",
            daemon=True,
        )
        self._accept_thread.start()
        print(f"[server] MJPEG server listening on {self.host}:{self.port}")

    def stop(self):
        """Close the listening socket and every client connection."""
        with self._lock:
            tcp, self._tcp = self._tcp, None
            connections = list(self._connections)
            self._connections.clear()
            self._clients.clear()
            self._current_frame = None
            self._running = False
        if tcp is None:
            return

        tcp.shutdown()
        tcp.server_close()
        for client in connections:
            client.close()

        thread, self._accept_thread = self._accept_thread, None
        if thread is not None:
            thread.join(timeout=2.0)
        print(f"[server] Stopped ({len(connections)} client(s) disconnected)")

    def push_frame(self, frame: Frame):
        """
        Make frame the current frame and write it to every client.

        Clients whose write fails are dropped; the error never reaches
        the caller.
        """
        part = encode_frame_part(frame.data)
        dropped = []
        with self._lock:
            self._current_frame = frame
            self._frames_pushed += 1
            for client in self._clients:
                try:
                    client.send_frame(part)
                except ClientIOError as e:
                    dropped.append((client, e))
            for client, _ in dropped:
                self._clients.remove(client)
            remaining = len(self._clients)

        for client, error in dropped:
            print(f"[server] Client {client.name} dropped: {error} ({remaining} remaining)")
            client.close()

    def update_frame_interval(self, delay_ms: int):
        """Set how often idle connections are checked for liveness."""
        if delay_ms <= 0:
            raise ValueError(f"Frame interval must be positive, got {delay_ms}")
        self._interval = delay_ms / 1000.0

    def get_stats(self) -> dict:
        with self._lock:
            clients = [
                {"address": client.name, "frames_sent": client.frames_sent}
                for client in self._clients
            ]
        frame = self._current_frame
        return {
            "running": self._running,
            "port": self.port,
            "clients": clients,
            "client_count": len(clients),
            "frames_pushed": self._frames_pushed,
            "current_frame_bytes": len(frame) if frame is not None else 0,
            "frame_interval_ms": self.frame_interval_ms,
        }

    def _serve_client(self, sock: socket.socket, address):
        client = ClientConnection(sock, address, self.send_timeout)
        with self._lock:
            if not self._running:
                client.close()
                return
            self._connections.add(client)
        print(f"[server] New client connected: {client.name}")

        try:
            client.read_request()
            client.send(RESPONSE_HEADERS)
            self._register(client)
            while client.is_alive():
                client.closed.wait(self._interval)
        except ClientIOError as e:
            print(f"[server] Client {client.name} error: {e}")
        finally:
            self._unregister(client)
            client.close()

    def _register(self, client: ClientConnection):
        with self._lock:
            self._clients.append(client)
            count = len(self._clients)
            # Sent under the lock so it cannot interleave with a push
            if self._current_frame is not None:
                client.send_frame(encode_frame_part(self._current_frame.data))
        print(f"[server] Client {client.name} added, total clients: {count}")

    def _unregister(self, client: ClientConnection):
        with self._lock:
            self._connections.discard(client)
            if client not in self._clients:
                return
            self._clients.remove(client)
            count = len(self._clients)
        print(f"[server] Client {client.name} disconnected, total clients: {count}")
