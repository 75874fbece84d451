"""
Capture session: owns the camera device and feeds the broadcast server.

The session is an explicit state machine:

    CLOSED -> OPENING -> CONFIGURING -> STREAMING -> CLOSING -> CLOSED
                 \\            \\             \\
                  +------------+-------------+--> ERROR -> CLOSED

Every device call happens on one capture worker thread per run. Control
calls from other threads (start, stop, setters) only update the stream
configuration and post events to that worker. While STREAMING the worker
alternates between handling queued events and capturing one frame, so a
new quality or rotation applies to the very next capture.

Usage:
    session = CaptureSession(create_provider())
    session.start(8082)
    session.set_quality(70)
    ...
    session.stop()
"""

import queue
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from . import config
from .camera import (
    CameraDevice,
    CameraProvider,
    ConfigurationFailed,
    DeviceDisconnected,
    DeviceError,
    DeviceUnavailable,
    describe_resolutions,
)
from .models import (
    CaptureRequest,
    DeviceDescriptor,
    Frame,
    FrameIntervalSetting,
    OrientationMode,
    OrientationSetting,
    QualitySetting,
    Resolution,
    StreamConfig,
    calculate_jpeg_orientation,
    default_stream_config,
    fps_setting,
    offered_resolutions,
    quality_setting,
    snap_rotation,
)
from .server import BindError, FrameBroadcastServer


class SessionState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    CLOSING = "closing"
    ERROR = "error"


_TRANSITIONS = {
    SessionState.CLOSED: {SessionState.OPENING},
    SessionState.OPENING: {SessionState.CONFIGURING, SessionState.CLOSING, SessionState.ERROR},
    SessionState.CONFIGURING: {SessionState.STREAMING, SessionState.CLOSING, SessionState.ERROR},
    SessionState.STREAMING: {SessionState.CLOSING, SessionState.ERROR},
    SessionState.CLOSING: {SessionState.CLOSED},
    SessionState.ERROR: {SessionState.CLOSED},
}


class EventKind(Enum):
    OPEN = "open"
    DEVICE_OPENED = "device_opened"
    PIPELINE_CONFIGURED = "pipeline_configured"
    CAPTURE_COMPLETED = "capture_completed"
    UPDATE_REQUEST = "update_request"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_ERROR = "device_error"
    STOP = "stop"


_ACTIVE = (SessionState.OPENING, SessionState.CONFIGURING, SessionState.STREAMING)

# States in which each event is legal; anything else is logged and rejected
_ACCEPTED_IN = {
    EventKind.OPEN: (SessionState.OPENING,),
    EventKind.DEVICE_OPENED: (SessionState.OPENING,),
    EventKind.PIPELINE_CONFIGURED: (SessionState.CONFIGURING,),
    EventKind.CAPTURE_COMPLETED: (SessionState.STREAMING,),
    EventKind.UPDATE_REQUEST: (SessionState.STREAMING,),
    EventKind.DEVICE_DISCONNECTED: _ACTIVE,
    EventKind.DEVICE_ERROR: _ACTIVE,
    EventKind.STOP: _ACTIVE,
}


class SessionStateError(Exception):
    """Raised when an operation is not valid in the current session state."""
    pass


@dataclass
class _Event:
    kind: EventKind
    payload: Any = None


class _CaptureWorker:
    """The single thread that owns device calls for one session run."""

    def __init__(self, run_id: int, target: Callable[["_CaptureWorker"], None]):
        self.run_id = run_id
        self.events: "queue.Queue[_Event]" = queue.Queue()
        self.abandoned = False
        self.thread = threading.Thread(
            target=target,
            args=(self,),
            name=f"netlens-capture-{run_id}",
            daemon=True,
        )

    def post(self, kind: EventKind, payload: Any = None):
        self.events.put(_Event(kind, payload))

    def is_current_thread(self) -> bool:
        return threading.current_thread() is self.thread


class CaptureSession:
    """
    Lifecycle of one capture device plus the MJPEG server it feeds.

    Args:
        provider: Camera provider used to enumerate and open devices
        stream_config: Initial settings; defaults come from environment
        port: Stream port used when start() is called without one
        server: Broadcast server to feed; one is created if omitted
        start_timeout: Seconds start() waits for the pipeline
        stop_timeout: Seconds stop() waits for the worker before forcing release
    """

    # Queue poll interval while no capture is running
    IDLE_POLL = 0.05

    def __init__(
        self,
        provider: CameraProvider,
        stream_config: StreamConfig = None,
        port: int = None,
        server: FrameBroadcastServer = None,
        start_timeout: float = None,
        stop_timeout: float = None,
    ):
        self._provider = provider
        self._config = stream_config or default_stream_config()
        self._port = config.PORT if port is None else port
        self._server = server or FrameBroadcastServer(
            host=config.HOST,
            frame_interval_ms=self._config.frame_interval.delay_ms,
            send_timeout=config.SEND_TIMEOUT,
        )
        self.start_timeout = config.START_TIMEOUT if start_timeout is None else start_timeout
        self.stop_timeout = config.STOP_TIMEOUT if stop_timeout is None else stop_timeout

        self._lock = threading.RLock()
        self._control_lock = threading.RLock()
        self._state = SessionState.CLOSED
        self._worker: Optional[_CaptureWorker] = None
        self._runs = 0
        self._established = threading.Event()
        self._listeners: List[Callable[[SessionState], None]] = []

        # Owned by the worker while a run is active
        self._device: Optional[CameraDevice] = None
        self._descriptor: Optional[DeviceDescriptor] = None
        self._supported: List[Resolution] = []
        self._active_resolution: Optional[Resolution] = None
        self._request: Optional[CaptureRequest] = None

        self._frames_captured = 0
        self._pipelines_built = 0
        self._last_error: Optional[Exception] = None

        self._handlers = {
            EventKind.OPEN: self._on_open,
            EventKind.DEVICE_OPENED: self._on_device_opened,
            EventKind.PIPELINE_CONFIGURED: self._on_pipeline_configured,
            EventKind.CAPTURE_COMPLETED: self._on_capture_completed,
            EventKind.UPDATE_REQUEST: self._on_update_request,
            EventKind.DEVICE_DISCONNECTED: self._on_device_failure,
            EventKind.DEVICE_ERROR: self._on_device_failure,
            EventKind.STOP: self._on_stop,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, port: int = None, config: StreamConfig = None, wait: bool = True):
        """
        Open the device, build the pipeline and start the MJPEG server.

        Args:
            port: Stream port; the previous port is reused if omitted
            config: Replace the whole configuration before starting
            wait: Block until the session is streaming or has failed

        Raises:
            SessionStateError: if the session is not CLOSED
            DeviceUnavailable: no device could be opened in time
            ConfigurationFailed: the capture pipeline could not be built
            BindError: the stream port could not be bound
        """
        with self._control_lock:
            with self._lock:
                if self._state is not SessionState.CLOSED:
                    raise SessionStateError(f"Cannot start while {self._state.name}")
                if config is not None:
                    self._config = replace(config)
                if port is not None:
                    self._port = port
                self._runs += 1
                self._last_error = None
                self._established.clear()
                worker = _CaptureWorker(self._runs, self._run)
                self._worker = worker
                self._set_state(SessionState.OPENING)

            print(f"[session] Starting camera streaming on port {self._port}")
            worker.thread.start()
            worker.post(EventKind.OPEN)
            if not wait:
                return

            if not self._established.wait(self.start_timeout):
                error = DeviceUnavailable(
                    f"Capture pipeline not ready after {self.start_timeout:.1f}s"
                )
                self._force_release(worker, error)
                raise error

            error = self._last_error
            if error is not None:
                raise error

    def stop(self):
        """
        Tear down the pipeline, the device and the server.

        No-op when already CLOSED. Waits at most stop_timeout seconds for the
        capture worker, then releases everything from the calling thread.
        """
        worker = self._worker
        if worker is not None and worker.is_current_thread():
            # Called from a state listener; the worker loop finishes the job
            worker.post(EventKind.STOP)
            return

        with self._control_lock:
            with self._lock:
                if self._state is SessionState.CLOSED:
                    return
                worker = self._worker

            print("[session] Stopping camera streaming")
            if worker is None:
                self._close_session(SessionState.CLOSING)
                return

            worker.post(EventKind.STOP)
            worker.thread.join(self.stop_timeout)
            if worker.thread.is_alive():
                print(f"[session] Capture worker still busy after {self.stop_timeout:.1f}s, forcing release")
                self._force_release(worker)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_resolution(self, resolution: Union[Resolution, str]):
        """Change the output size; restarts the pipeline if streaming."""
        if isinstance(resolution, str):
            resolution = Resolution.parse(resolution)
        self._reconfigure("resolution", resolution)

    def set_device(self, device: Union[DeviceDescriptor, str]):
        """Select a capture device; restarts the pipeline if streaming."""
        device_id = device.id if isinstance(device, DeviceDescriptor) else str(device)
        self._reconfigure("device_id", device_id)

    def set_quality(self, quality: Union[QualitySetting, int]):
        if not isinstance(quality, QualitySetting):
            quality = quality_setting(int(quality))
        with self._lock:
            self._config.quality = quality
        print(f"[session] Quality changed to: {quality}")
        self._post_request_update()

    def set_orientation(self, mode: Union[OrientationMode, OrientationSetting, str]):
        if isinstance(mode, OrientationSetting):
            mode = mode.mode
        elif isinstance(mode, str):
            mode = OrientationMode(mode.lower())
        with self._lock:
            self._config.orientation = mode
        print(f"[session] Orientation setting changed to: {mode.value}")
        self._post_request_update()

    def set_device_orientation_degrees(self, degrees: int):
        """Feed the live device rotation used by AUTO orientation."""
        snapped = snap_rotation(degrees)
        with self._lock:
            changed = snapped != self._config.device_orientation
            self._config.device_orientation = snapped
        if changed:
            print(f"[session] Device orientation changed to: {snapped}")
            self._post_request_update()

    def set_frame_interval(self, setting: Union[FrameIntervalSetting, int]):
        """Change keep-alive pacing; the capture pipeline is untouched."""
        if not isinstance(setting, FrameIntervalSetting):
            setting = fps_setting(int(setting))
        with self._lock:
            self._config.frame_interval = setting
        self._server.update_frame_interval(setting.delay_ms)
        print(f"[session] FPS changed to: {setting}")

    def add_state_listener(self, listener: Callable[[SessionState], None]):
        with self._lock:
            self._listeners.append(listener)

    def report_device_error(self, error: Exception):
        """
        Report an asynchronous device failure from a platform callback.

        The session tears itself down to CLOSED; nothing is raised.
        """
        kind = EventKind.DEVICE_DISCONNECTED if isinstance(error, DeviceDisconnected) else EventKind.DEVICE_ERROR
        with self._lock:
            worker = self._worker if self._state in _ACTIVE else None
        if worker is not None:
            worker.post(kind, error)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state is SessionState.STREAMING

    @property
    def config(self) -> StreamConfig:
        with self._lock:
            return replace(self._config)

    @property
    def resolution(self) -> Resolution:
        return self._config.resolution

    @property
    def active_resolution(self) -> Optional[Resolution]:
        """Size the running pipeline actually produces (after fallback)."""
        return self._active_resolution

    @property
    def device_id(self) -> Optional[str]:
        return self._config.device_id

    @property
    def active_device(self) -> Optional[DeviceDescriptor]:
        return self._descriptor

    @property
    def quality(self) -> QualitySetting:
        return self._config.quality

    @property
    def orientation(self) -> OrientationMode:
        return self._config.orientation

    @property
    def device_orientation(self) -> int:
        return self._config.device_orientation

    @property
    def frame_interval(self) -> FrameIntervalSetting:
        return self._config.frame_interval

    @property
    def port(self) -> int:
        """Bound stream port while streaming, else the configured one."""
        return self._server.port if self._server.is_running else self._port

    @property
    def server(self) -> FrameBroadcastServer:
        return self._server

    @property
    def provider(self) -> CameraProvider:
        return self._provider

    @property
    def frames_captured(self) -> int:
        return self._frames_captured

    @property
    def pipeline_generation(self) -> int:
        """Number of capture pipelines built so far."""
        return self._pipelines_built

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    @property
    def current_request(self) -> Optional[CaptureRequest]:
        return self._request

    def available_devices(self) -> List[DeviceDescriptor]:
        return self._provider.list_devices()

    def available_resolutions(self) -> List[Resolution]:
        """Resolutions to offer for the active (or selected) device."""
        with self._lock:
            if self._descriptor is not None and self._supported:
                return offered_resolutions(self._supported)
        descriptor = self._selected_device()
        if descriptor is None:
            return []
        return offered_resolutions(self._provider.supported_resolutions(descriptor.id))

    def jpeg_orientation(self) -> int:
        """Rotation the next capture request carries."""
        with self._lock:
            descriptor = self._descriptor
            stream_config = replace(self._config)
        if descriptor is None:
            descriptor = self._selected_device()
        if descriptor is None:
            return 0
        return calculate_jpeg_orientation(
            descriptor.sensor_orientation,
            descriptor.facing,
            stream_config.orientation,
            stream_config.device_orientation,
        )

    def get_stats(self) -> dict:
        """Get session statistics."""
        descriptor = self._descriptor
        active = self._active_resolution
        return {
            "state": self._state.value,
            "streaming": self.is_streaming,
            "provider": self._provider.name,
            "device": descriptor.name if descriptor else None,
            "active_resolution": f"{active.width}x{active.height}" if active else None,
            "frames_captured": self._frames_captured,
            "pipelines_built": self._pipelines_built,
            "jpeg_orientation": self._request.jpeg_orientation if self._request else None,
            "last_error": str(self._last_error) if self._last_error else None,
            "config": self.config.to_dict(),
            "server": self._server.get_stats(),
        }

    # ------------------------------------------------------------------
    # Capture worker
    # ------------------------------------------------------------------

    def _run(self, worker: _CaptureWorker):
        print(f"[session] Capture worker {worker.run_id} started")
        try:
            while not worker.abandoned:
                streaming = self._state is SessionState.STREAMING
                try:
                    if streaming:
                        event = worker.events.get_nowait()
                    else:
                        event = worker.events.get(timeout=self.IDLE_POLL)
                except queue.Empty:
                    event = None

                if event is not None:
                    self._dispatch(worker, event)
                elif streaming:
                    self._capture_once(worker)

                if self._state is SessionState.CLOSED:
                    break
        finally:
            self._drain(worker)
            print(f"[session] Capture worker {worker.run_id} stopped")

    def _is_stale(self, worker: _CaptureWorker) -> bool:
        """True once worker no longer owns the session (abandoned or superseded)."""
        return worker.abandoned or worker.run_id != self._runs

    def _dispatch(self, worker: _CaptureWorker, event: _Event):
        if self._is_stale(worker):
            self._reject(event, "event from an abandoned capture worker")
            return
        if self._state not in _ACCEPTED_IN[event.kind]:
            self._reject(event, f"unexpected in state {self._state.name}")
            return
        self._handlers[event.kind](worker, event)

    def _reject(self, event: _Event, reason: str):
        print(f"[session] Ignoring {event.kind.value} event: {reason}")
        try:
            if event.kind is EventKind.DEVICE_OPENED:
                _, device = event.payload
                device.close()
            elif event.kind is EventKind.CAPTURE_COMPLETED:
                event.payload.release()
        except Exception as e:
            print(f"[session] Error releasing rejected {event.kind.value} payload: {e}")

    def _drain(self, worker: _CaptureWorker):
        while True:
            try:
                event = worker.events.get_nowait()
            except queue.Empty:
                return
            if event.kind in (EventKind.DEVICE_OPENED, EventKind.CAPTURE_COMPLETED):
                self._reject(event, "capture worker exited")

    def _on_open(self, worker: _CaptureWorker, event: _Event):
        try:
            descriptor = self._resolve_device()
            print(f"[session] Opening camera: {descriptor.name} (id {descriptor.id})")
            device = self._provider.open_device(descriptor.id)
        except DeviceUnavailable as e:
            self._fail(worker, e)
            return
        except Exception as e:
            self._fail(worker, DeviceUnavailable(f"Failed to open camera: {e}"))
            return
        if self._is_stale(worker):
            self._discard_device(worker, device)
            return
        worker.post(EventKind.DEVICE_OPENED, (descriptor, device))

    def _on_device_opened(self, worker: _CaptureWorker, event: _Event):
        descriptor, device = event.payload
        with self._lock:
            stale = self._is_stale(worker)
            if not stale:
                self._device = device
                self._descriptor = descriptor
                self._set_state(SessionState.CONFIGURING)
        if stale:
            self._discard_device(worker, device)
            return

        try:
            supported = device.supported_resolutions()
            resolution = self._resolve_resolution(device, supported)
            device.configure(resolution)
        except ConfigurationFailed as e:
            self._fail(worker, e)
            return
        except Exception as e:
            self._fail(worker, ConfigurationFailed(f"Failed to configure capture pipeline: {e}"))
            return

        with self._lock:
            stale = self._is_stale(worker)
            if not stale:
                self._supported = list(supported)
                self._active_resolution = resolution
                self._pipelines_built += 1
        if stale:
            self._discard_device(worker, device)
            return
        print(f"[session] Capture pipeline configured for {resolution}")
        worker.post(EventKind.PIPELINE_CONFIGURED)

    def _on_pipeline_configured(self, worker: _CaptureWorker, event: _Event):
        try:
            self._server.update_frame_interval(self._config.frame_interval.delay_ms)
            self._server.start(self._port)
        except BindError as e:
            self._fail(worker, e)
            return

        with self._lock:
            if self._is_stale(worker):
                print(f"[session] Capture worker {worker.run_id} was abandoned before streaming")
                return
            self._request = self._build_request()
            self._set_state(SessionState.STREAMING)
        print(
            f"[session] Streaming {self._active_resolution} from {self._descriptor.name} "
            f"(quality {self._request.quality}, rotation {self._request.jpeg_orientation})"
        )
        self._established.set()

    def _on_update_request(self, worker: _CaptureWorker, event: _Event):
        with self._lock:
            self._request = self._build_request()
        print(
            f"[session] Updated capture request: quality {self._request.quality}, "
            f"rotation {self._request.jpeg_orientation}"
        )

    def _capture_once(self, worker: _CaptureWorker):
        device, request = self._device, self._request
        try:
            buffer = device.acquire_latest(request)
        except DeviceDisconnected as e:
            self._dispatch(worker, _Event(EventKind.DEVICE_DISCONNECTED, e))
            return
        except DeviceError as e:
            self._dispatch(worker, _Event(EventKind.DEVICE_ERROR, e))
            return
        except Exception as e:
            self._dispatch(worker, _Event(EventKind.DEVICE_ERROR, DeviceError(f"Capture failed: {e}")))
            return
        if buffer is not None:
            self._dispatch(worker, _Event(EventKind.CAPTURE_COMPLETED, buffer))

    def _on_capture_completed(self, worker: _CaptureWorker, event: _Event):
        buffer = event.payload
        try:
            if buffer.data:
                with self._lock:
                    self._frames_captured += 1
                    index = self._frames_captured
                self._server.push_frame(Frame(bytes(buffer.data), index=index))
        finally:
            buffer.release()

    def _on_device_failure(self, worker: _CaptureWorker, event: _Event):
        error = event.payload
        if not isinstance(error, Exception):
            error = DeviceError(str(error))
        print(f"[session] Camera {event.kind.value.replace('_', ' ')}")
        self._fail(worker, error)

    def _on_stop(self, worker: _CaptureWorker, event: _Event):
        self._close_session(SessionState.CLOSING)
        self._established.set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, new_state: SessionState):
        with self._lock:
            old_state = self._state
            if new_state not in _TRANSITIONS[old_state]:
                raise RuntimeError(f"Illegal session transition {old_state.name} -> {new_state.name}")
            self._state = new_state
            listeners = list(self._listeners)
        print(f"[session] {old_state.name} -> {new_state.name}")
        for listener in listeners:
            try:
                listener(new_state)
            except Exception as e:
                print(f"[session] State listener failed: {e}")

    def _fail(self, worker: _CaptureWorker, error: Exception):
        if self._is_stale(worker):
            print(f"[session] Ignoring {type(error).__name__} from abandoned capture worker {worker.run_id}: {error}")
            return
        print(f"[session] {type(error).__name__}: {error}")
        with self._lock:
            self._last_error = error
        self._close_session(SessionState.ERROR)
        self._established.set()

    def _close_session(self, via: SessionState):
        """Move through CLOSING or ERROR to CLOSED, releasing everything."""
        with self._lock:
            if via in _TRANSITIONS[self._state]:
                self._set_state(via)
        self._release_resources()
        with self._lock:
            if self._state is not SessionState.CLOSED:
                self._set_state(SessionState.CLOSED)

    def _discard_device(self, worker: _CaptureWorker, device: CameraDevice):
        """Close a device opened by a worker that no longer owns the session."""
        print(f"[session] Closing {device.descriptor.name} opened by abandoned capture worker {worker.run_id}")
        try:
            device.close()
        except Exception as e:
            print(f"[session] Error closing camera: {e}")

    def _force_release(self, worker: _CaptureWorker, error: Exception = None):
        with self._lock:
            worker.abandoned = True
            if self._worker is worker:
                self._worker = None
            if error is not None:
                self._last_error = error
        self._close_session(SessionState.ERROR if error is not None else SessionState.CLOSING)

    def _release_resources(self):
        with self._lock:
            device, self._device = self._device, None
            self._descriptor = None
            self._supported = []
            self._active_resolution = None
            self._request = None
        if device is not None:
            try:
                device.close()
                print("[session] Camera closed")
            except Exception as e:
                print(f"[session] Error closing camera: {e}")
        try:
            self._server.stop()
        except Exception as e:
            print(f"[session] Error stopping server: {e}")

    def _post_request_update(self):
        with self._lock:
            worker = self._worker if self._state is SessionState.STREAMING else None
        if worker is not None:
            worker.post(EventKind.UPDATE_REQUEST)

    def _reconfigure(self, field_name: str, value):
        with self._control_lock:
            with self._lock:
                setattr(self._config, field_name, value)
                restart = self._state is SessionState.STREAMING
            print(f"[session] {field_name.replace('_', ' ').capitalize()} changed to: {value}")
            if restart:
                print(f"[session] Restarting streaming with new {field_name.replace('_', ' ')}")
                self.stop()
                self.start()

    def _selected_device(self) -> Optional[DeviceDescriptor]:
        devices = self._provider.list_devices()
        for device in devices:
            if device.id == self._config.device_id:
                return device
        return devices[0] if devices else None

    def _resolve_device(self) -> DeviceDescriptor:
        devices = self._provider.list_devices()
        if not devices:
            raise DeviceUnavailable("No capture devices available")
        with self._lock:
            wanted = self._config.device_id
            for device in devices:
                if device.id == wanted:
                    return device
            fallback = devices[0]
            if wanted is not None:
                print(f"[session] Camera {wanted!r} not present, falling back to {fallback.name}")
            self._config.device_id = fallback.id
        return fallback

    def _resolve_resolution(self, device: CameraDevice, supported: List[Resolution]) -> Resolution:
        if not supported:
            raise ConfigurationFailed(f"{device.descriptor.name} reports no output sizes")
        with self._lock:
            requested = self._config.resolution
        for res in supported:
            if res.same_size(requested):
                return requested
        print(
            f"[session] {requested} not supported by {device.descriptor.name} "
            f"({describe_resolutions(supported)}), using {supported[0]}"
        )
        return supported[0]

    def _build_request(self) -> CaptureRequest:
        descriptor = self._descriptor
        return CaptureRequest(
            quality=self._config.quality.quality,
            jpeg_orientation=calculate_jpeg_orientation(
                descriptor.sensor_orientation,
                descriptor.facing,
                self._config.orientation,
                self._config.device_orientation,
            ),
        )
