"""Tests for the capture session state machine."""

import io
import time

import pytest
from PIL import Image

from netlens.camera import (
    ConfigurationFailed,
    DeviceDisconnected,
    DeviceError,
    DeviceUnavailable,
    DummyCameraProvider,
)
from netlens.models import OrientationMode, Resolution, default_stream_config
from netlens.server import BindError, FrameBroadcastServer
from netlens.session import SessionState, SessionStateError

from conftest import FakeProvider, open_stream, wait_for


def _config(**changes):
    cfg = default_stream_config()
    cfg.resolution = Resolution(1280, 720, "HD")
    cfg.device_id = None
    cfg.orientation = OrientationMode.AUTO
    for name, value in changes.items():
        setattr(cfg, name, value)
    return cfg


class TestLifecycle:
    def test_start_and_stop(self, provider, make_session):
        session = make_session(provider, _config())
        states = []
        session.add_state_listener(states.append)

        session.start()
        assert session.state is SessionState.STREAMING
        assert session.server.is_running
        assert session.port == session.server.port
        assert wait_for(lambda: session.frames_captured > 0)

        session.stop()
        assert session.state is SessionState.CLOSED
        assert not session.server.is_running
        assert provider.open_handles == []
        assert states == [
            SessionState.OPENING,
            SessionState.CONFIGURING,
            SessionState.STREAMING,
            SessionState.CLOSING,
            SessionState.CLOSED,
        ]

    def test_frames_reach_stream_clients(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        reader = open_stream(session.port)
        try:
            frame = reader.read_frame()
            assert frame.startswith(b"\xff\xd8")
            assert frame.endswith(b"\xff\xd9")
        finally:
            reader.close()

    def test_stop_when_closed_is_noop(self, provider, make_session):
        session = make_session(provider, _config())
        session.stop()
        session.start()
        session.stop()
        session.stop()
        assert session.state is SessionState.CLOSED

    def test_start_while_streaming_raises(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        with pytest.raises(SessionStateError):
            session.start()
        assert session.state is SessionState.STREAMING

    def test_restart_after_stop(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        session.stop()
        session.start()
        assert session.state is SessionState.STREAMING
        assert len(provider.opened) == 2
        assert len(provider.open_handles) == 1

    def test_start_without_wait(self, provider, make_session):
        session = make_session(provider, _config())
        session.start(wait=False)
        assert wait_for(lambda: session.state is SessionState.STREAMING)

    def test_context_manager(self, provider, make_session):
        session = make_session(provider, _config())
        with session:
            assert session.is_streaming
        assert session.state is SessionState.CLOSED


class TestFallbacks:
    def test_unknown_device_falls_back_to_first(self, provider, make_session):
        session = make_session(provider, _config(device_id="missing"))
        session.start()
        assert session.active_device.name == "Back Camera"
        assert session.device_id == "0"

    def test_selected_device_is_used(self, provider, make_session):
        session = make_session(provider, _config(device_id="1"))
        session.start()
        assert session.active_device.name == "Front Camera"

    def test_unsupported_resolution_uses_first_supported(self, provider, make_session):
        session = make_session(provider, _config(resolution=Resolution(1920, 1080)))
        session.start()
        assert session.active_resolution.size == (1280, 720)
        assert provider.opened[0].configured == [Resolution(1280, 720, "HD")]
        # The requested size stays configured for the next start
        assert session.resolution.size == (1920, 1080)


class TestStartFailures:
    def test_no_devices(self, make_session):
        session = make_session(FakeProvider(devices=[]), _config())
        with pytest.raises(DeviceUnavailable):
            session.start()
        assert session.state is SessionState.CLOSED
        assert isinstance(session.last_error, DeviceUnavailable)
        assert not session.server.is_running

    def test_open_failure(self, provider, make_session):
        provider.open_error = DeviceUnavailable("busy")
        session = make_session(provider, _config())
        with pytest.raises(DeviceUnavailable):
            session.start()
        assert session.state is SessionState.CLOSED

    def test_no_output_sizes(self, make_session):
        provider = FakeProvider(resolutions=[])
        session = make_session(provider, _config())
        with pytest.raises(ConfigurationFailed):
            session.start()
        assert provider.open_handles == []

    def test_configure_failure_closes_device(self, provider, make_session):
        provider.configure_error = RuntimeError("pipeline rejected")
        session = make_session(provider, _config())
        states = []
        session.add_state_listener(states.append)
        with pytest.raises(ConfigurationFailed):
            session.start()
        assert states == [
            SessionState.OPENING,
            SessionState.CONFIGURING,
            SessionState.ERROR,
            SessionState.CLOSED,
        ]
        assert len(provider.opened) == 1
        assert provider.open_handles == []
        assert session.state is SessionState.CLOSED

    def test_bind_error_leaves_no_open_device(self, provider, blocked_port):
        from netlens.session import CaptureSession

        session = CaptureSession(
            provider,
            stream_config=_config(),
            server=FrameBroadcastServer(host="127.0.0.1"),
            start_timeout=5.0,
        )
        states = []
        session.add_state_listener(states.append)
        with pytest.raises(BindError):
            session.start(blocked_port)
        assert states[-2:] == [SessionState.ERROR, SessionState.CLOSED]
        assert SessionState.STREAMING not in states
        assert provider.open_handles == []
        assert session.state is SessionState.CLOSED

    def test_start_timeout(self, provider, make_session):
        provider.hang_open = True
        session = make_session(provider, _config(), start_timeout=0.3)
        began = time.monotonic()
        try:
            with pytest.raises(DeviceUnavailable):
                session.start()
            assert time.monotonic() - began < 2.0
            assert session.state is SessionState.CLOSED
        finally:
            provider.unhang.set()
        # The device the abandoned worker eventually opens is closed again
        assert wait_for(lambda: len(provider.opened) == 1 and provider.open_handles == [])

    def test_late_failure_from_abandoned_open_is_ignored(self, provider, make_session):
        """A hung open that fails after a newer run started leaves that run alone."""
        provider.hang_open = True
        session = make_session(provider, _config(), start_timeout=0.3)
        try:
            with pytest.raises(DeviceUnavailable):
                session.start()

            provider.hang_open = False
            session.start()
            assert session.state is SessionState.STREAMING

            provider.open_error = DeviceUnavailable("late failure")
            provider.unhang.set()
            time.sleep(0.3)

            assert session.state is SessionState.STREAMING
            assert session.server.is_running
            assert session.last_error is None
            assert len(provider.open_handles) == 1
        finally:
            provider.unhang.set()

    def test_late_success_from_abandoned_open_is_closed(self, provider, make_session):
        """A hung open that succeeds after a newer run started closes its own device."""
        provider.hang_open = True
        session = make_session(provider, _config(), start_timeout=0.3)
        try:
            with pytest.raises(DeviceUnavailable):
                session.start()

            provider.hang_open = False
            session.start()
            generation = session.pipeline_generation
            active = provider.opened[0]

            provider.unhang.set()
            assert wait_for(lambda: len(provider.opened) == 2)
            assert wait_for(lambda: provider.open_handles == [active])
            assert session.state is SessionState.STREAMING
            assert session.pipeline_generation == generation
        finally:
            provider.unhang.set()


class TestRetuning:
    def test_set_quality_keeps_pipeline(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        assert wait_for(lambda: session.frames_captured >= 3)
        device = provider.opened[0]
        before = session.frames_captured

        session.set_quality(50)

        assert wait_for(lambda: any(r.quality == 50 for r in device.requests))
        assert wait_for(lambda: session.frames_captured > before + 3)
        assert provider.opened == [device]
        assert session.pipeline_generation == 1
        assert session.quality.quality == 50

    def test_set_orientation_changes_next_request(self, provider, make_session):
        # Back camera, sensor at 90 degrees
        session = make_session(provider, _config())
        session.start()
        assert session.current_request.jpeg_orientation == 90

        session.set_orientation("landscape")
        assert wait_for(lambda: session.current_request.jpeg_orientation == 0)
        assert wait_for(lambda: provider.opened[0].requests[-1].jpeg_orientation == 0)
        assert len(provider.opened) == 1

    def test_device_orientation_feeds_auto_mode(self, provider, make_session):
        session = make_session(provider, _config(device_id="1"))
        session.start()
        # Front camera, sensor at 270 degrees
        assert session.jpeg_orientation() == 270
        session.set_device_orientation_degrees(95)
        assert session.device_orientation == 90
        assert wait_for(lambda: session.current_request.jpeg_orientation == 0)

    def test_jpeg_orientation_when_closed(self, provider, make_session):
        session = make_session(provider, _config(orientation=OrientationMode.LANDSCAPE))
        assert session.jpeg_orientation() == 0

    def test_set_frame_interval_updates_server(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        session.set_frame_interval(15)
        assert session.server.frame_interval_ms == 67
        assert session.frame_interval.fps == 15
        assert session.pipeline_generation == 1

    def test_invalid_settings_raise(self, provider, make_session):
        session = make_session(provider, _config())
        with pytest.raises(ValueError):
            session.set_quality(0)
        with pytest.raises(ValueError):
            session.set_orientation("sideways")
        with pytest.raises(ValueError):
            session.set_resolution("big")

    def test_set_resolution_while_closed_does_not_start(self, provider, make_session):
        session = make_session(provider, _config())
        session.set_resolution("640x480")
        assert session.state is SessionState.CLOSED
        assert provider.opened == []
        assert session.resolution.name == "VGA"

    def test_set_device_restarts_pipeline(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        session.set_device("1")
        assert session.state is SessionState.STREAMING
        assert session.active_device.name == "Front Camera"
        assert session.pipeline_generation == 2
        assert [d.descriptor.id for d in provider.open_handles] == ["1"]

    def test_set_resolution_changes_jpeg_size(self, make_session):
        session = make_session(DummyCameraProvider(fps=100), _config())
        session.start()

        reader = open_stream(session.port)
        try:
            assert Image.open(io.BytesIO(reader.read_frame())).size == (1280, 720)
        finally:
            reader.close()

        session.set_resolution(Resolution(640, 480))
        assert session.pipeline_generation == 2
        assert session.state is SessionState.STREAMING

        reader = open_stream(session.port)
        try:
            assert Image.open(io.BytesIO(reader.read_frame())).size == (640, 480)
        finally:
            reader.close()


class TestDeviceFailures:
    def test_disconnect_tears_down_session(self, provider, make_session):
        session = make_session(provider, _config())
        states = []
        session.add_state_listener(states.append)
        session.start()
        reader = open_stream(session.port)

        provider.unplugged.set()

        assert wait_for(lambda: states[-1:] == [SessionState.CLOSED])
        assert states[-3:] == [SessionState.STREAMING, SessionState.ERROR, SessionState.CLOSED]
        assert session.state is SessionState.CLOSED
        assert isinstance(session.last_error, DeviceDisconnected)
        assert not session.server.is_running
        assert provider.open_handles == []
        assert reader.wait_closed()
        reader.close()

    def test_reported_device_error(self, provider, make_session):
        session = make_session(provider, _config())
        session.start()
        states = []
        session.add_state_listener(states.append)
        session.report_device_error(DeviceError("sensor fault"))
        assert wait_for(lambda: states[-1:] == [SessionState.CLOSED])
        assert states == [SessionState.ERROR, SessionState.CLOSED]
        assert str(session.last_error) == "sensor fault"
        assert provider.open_handles == []

    def test_stop_with_stuck_device_is_bounded(self, provider, make_session):
        session = make_session(provider, _config(), stop_timeout=0.3)
        session.start()
        provider.hang.set()
        time.sleep(0.1)

        began = time.monotonic()
        try:
            session.stop()
            assert time.monotonic() - began < 2.0
            assert session.state is SessionState.CLOSED
            assert provider.open_handles == []
            assert not session.server.is_running
        finally:
            provider.unhang.set()


def test_frame_pushed_before_buffer_released(provider, make_session):
    session = make_session(provider, _config())
    pushed = []
    push_frame = session.server.push_frame

    def recording_push(frame):
        pushed.append(frame.data)
        provider.log.append(("push", frame.data))
        push_frame(frame)

    session.server.push_frame = recording_push
    session.start()
    assert wait_for(lambda: len(pushed) >= 5)
    session.stop()

    log = list(provider.log)
    for data in pushed:
        assert log.index(("push", data)) < log.index(("release", data))


def test_available_resolutions_and_devices(provider, make_session):
    session = make_session(provider, _config())
    assert [r.name for r in session.available_resolutions()] == ["HD", "VGA"]
    assert [d.name for d in session.available_devices()] == ["Back Camera", "Front Camera"]


def test_stats(provider, make_session):
    session = make_session(provider, _config())
    session.start()
    stats = session.get_stats()
    assert stats["state"] == "streaming"
    assert stats["provider"] == "fake"
    assert stats["device"] == "Back Camera"
    assert stats["active_resolution"] == "1280x720"
    assert stats["config"]["quality"] == session.quality.quality
    assert stats["server"]["running"] is True
