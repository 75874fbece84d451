"""
Camera device abstraction and the dummy test-pattern camera.

A CameraProvider enumerates devices and opens them. An open CameraDevice
is configured for one output size and then polled for frames:

    provider = create_provider()
    device = provider.open_device(provider.list_devices()[0].id)
    device.configure(Resolution(1280, 720))

    with device.acquire_latest(CaptureRequest(quality=85)) as buffer:
        jpeg_bytes = buffer.data

    device.close()

Every device call is made from the capture session's worker thread, so
implementations do not need to be thread-safe beyond close().
"""

import io
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import numpy as np
from PIL import Image, ImageDraw

from .models import (
    CaptureRequest,
    DeviceDescriptor,
    Facing,
    Resolution,
    name_devices,
    named_resolution,
)


class CameraError(Exception):
    """Raised when camera operations fail."""
    pass


class DeviceUnavailable(CameraError):
    """The requested (or fallback) device cannot be opened."""
    pass


class ConfigurationFailed(CameraError):
    """The capture pipeline cannot be built for the requested output."""
    pass


class DeviceDisconnected(CameraError):
    """The device went away while open."""
    pass


class DeviceError(CameraError):
    """The device reported a fatal error while open."""
    pass


class CaptureBuffer:
    """
    One captured JPEG, held until released.

    The session pushes the frame to the broadcaster inside the with block
    and the backend gets its buffer back on exit.
    """

    def __init__(self, data: bytes, on_release: Optional[Callable[[], None]] = None):
        self.data = data
        self._on_release = on_release
        self.released = False

    def release(self):
        if self.released:
            return
        self.released = True
        if self._on_release is not None:
            self._on_release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class CameraDevice(ABC):
    """An open capture device."""

    def __init__(self, descriptor: DeviceDescriptor):
        self.descriptor = descriptor

    @abstractmethod
    def supported_resolutions(self) -> List[Resolution]:
        """Output sizes the device can produce, preferred first."""
        pass

    @abstractmethod
    def configure(self, resolution: Resolution) -> None:
        """
        Build the capture pipeline for one output size.

        Raises:
            ConfigurationFailed: if the pipeline cannot be built
        """
        pass

    @abstractmethod
    def acquire_latest(self, request: CaptureRequest) -> Optional[CaptureBuffer]:
        """
        Capture and encode the next frame.

        Blocks for at most about one frame period. Older frames the device
        produced in the meantime are dropped, never queued.

        Returns:
            A CaptureBuffer, or None if no frame was ready.

        Raises:
            DeviceDisconnected: the device went away
            DeviceError: the device failed
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the device. Safe to call more than once."""
        pass


class CameraProvider(ABC):
    """Enumerates and opens capture devices."""

    name = "camera"

    @abstractmethod
    def list_devices(self) -> List[DeviceDescriptor]:
        pass

    @abstractmethod
    def supported_resolutions(self, device_id: str) -> List[Resolution]:
        pass

    @abstractmethod
    def open_device(self, device_id: str) -> CameraDevice:
        """
        Open a device by id.

        Raises:
            DeviceUnavailable: if the device is absent, busy or not permitted
        """
        pass

    def find_device(self, device_id: Optional[str]) -> Optional[DeviceDescriptor]:
        if device_id is None:
            return None
        for device in self.list_devices():
            if device.id == device_id:
                return device
        return None


_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


def encode_jpeg(rgb: np.ndarray, quality: int, rotation: int = 0) -> bytes:
    """
    Encode an RGB array as JPEG.

    Args:
        rgb: uint8 array of shape (H, W, 3)
        quality: JPEG quality 1-100
        rotation: Clockwise rotation in degrees (0/90/180/270)

    Returns:
        JPEG bytes
    """
    return encode_image(Image.fromarray(rgb, "RGB"), quality, rotation)


def encode_image(img: Image.Image, quality: int, rotation: int = 0) -> bytes:
    """Encode a PIL image as JPEG, rotated clockwise by rotation degrees."""
    if rotation in _TRANSPOSE:
        img = img.transpose(_TRANSPOSE[rotation])
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


# Fallback for testing without a camera
DUMMY_RESOLUTIONS = [
    Resolution(1920, 1080, "Full HD"),
    Resolution(1280, 720, "HD"),
    Resolution(640, 480, "VGA"),
    Resolution(320, 240),
]


class DummyCamera(CameraDevice):
    """
    A dummy camera for testing without hardware.
    Generates a moving gradient test pattern.
    """

    def __init__(self, descriptor: DeviceDescriptor, resolutions: List[Resolution], fps: int = 30):
        super().__init__(descriptor)
        self._resolutions = list(resolutions)
        self.fps = fps
        self.resolution: Optional[Resolution] = None
        self.frame_count = 0
        self.last_request: Optional[CaptureRequest] = None
        self._background: Optional[np.ndarray] = None
        self._last_frame_time = 0.0
        self._closed = threading.Event()

    def supported_resolutions(self) -> List[Resolution]:
        return list(self._resolutions)

    def configure(self, resolution: Resolution) -> None:
        if self._closed.is_set():
            raise ConfigurationFailed("Device is closed")
        if not any(res.same_size(resolution) for res in self._resolutions):
            raise ConfigurationFailed(f"{resolution} is not supported by {self.descriptor.name}")

        height, width = resolution.height, resolution.width
        img = np.zeros((height, width, 3), dtype=np.uint8)
        ramp = np.linspace(0, 255, height, dtype=np.float32)[:, None]
        img[:, :, 0] = ramp.astype(np.uint8)  # Red gradient
        img[:, :, 2] = (255 - ramp).astype(np.uint8)  # Blue gradient
        self._background = img
        self.resolution = resolution
        print(f"[dummy-camera] Configured {self.descriptor.name} for {resolution}")

    def acquire_latest(self, request: CaptureRequest) -> Optional[CaptureBuffer]:
        if self._closed.is_set():
            raise DeviceDisconnected(f"{self.descriptor.name} is closed")
        if self._background is None:
            raise DeviceError("acquire_latest() called before configure()")

        # Simulate frame rate
        wait = (1.0 / self.fps) - (time.monotonic() - self._last_frame_time)
        if wait > 0 and self._closed.wait(wait):
            raise DeviceDisconnected(f"{self.descriptor.name} closed during capture")
        self._last_frame_time = time.monotonic()

        img = self._background.copy()
        t = self.frame_count % 100
        img[:, :, 1] = int(128 + 127 * (t / 100))  # Green varies

        height, width = img.shape[:2]
        bar = (self.frame_count * 8) % width
        img[:, bar:bar + 8, :] = 255

        pil_img = Image.fromarray(img)
        draw = ImageDraw.Draw(pil_img)
        draw.text((10, 10), f"{self.descriptor.name}  #{self.frame_count}", fill=(255, 255, 255))

        data = encode_image(pil_img, request.quality, request.jpeg_orientation)
        self.frame_count += 1
        self.last_request = request
        return CaptureBuffer(data)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._background = None
        print(f"[dummy-camera] Closed {self.descriptor.name}")


class DummyCameraProvider(CameraProvider):
    """Provides a back and a front DummyCamera."""

    name = "dummy"

    def __init__(self, resolutions: List[Resolution] = None, fps: int = 30, sensor_orientation: int = 0):
        self.resolutions = list(resolutions or DUMMY_RESOLUTIONS)
        self.fps = fps
        self._devices = name_devices([
            ("0", Facing.BACK, sensor_orientation),
            ("1", Facing.FRONT, sensor_orientation),
        ])

    def list_devices(self) -> List[DeviceDescriptor]:
        return list(self._devices)

    def supported_resolutions(self, device_id: str) -> List[Resolution]:
        if self.find_device(device_id) is None:
            return []
        return list(self.resolutions)

    def open_device(self, device_id: str) -> CameraDevice:
        descriptor = self.find_device(device_id)
        if descriptor is None:
            raise DeviceUnavailable(f"No dummy camera with id {device_id!r}")
        print(f"[dummy-camera] Opening {descriptor.name} (no real hardware)")
        return DummyCamera(descriptor, self.resolutions, fps=self.fps)


def create_provider(backend: str = "auto", use_dummy: bool = False) -> CameraProvider:
    """
    Factory function to create the camera provider for a backend.

    Args:
        backend: "auto", "picamera2", "opencv" or "dummy"
        use_dummy: Force use of dummy camera for testing

    Returns:
        A CameraProvider. "auto" prefers Picamera2, then any OpenCV
        device, then the dummy camera.
    """
    from . import backends

    if use_dummy or backend == "dummy":
        return DummyCameraProvider()

    if backend == "picamera2":
        return backends.Picamera2Provider()

    if backend == "opencv":
        return backends.OpenCVCameraProvider()

    if backend != "auto":
        raise ValueError(f"Unknown camera backend: {backend}")

    if backends.PICAMERA2_AVAILABLE:
        provider = backends.Picamera2Provider()
        if provider.list_devices():
            return provider
        print("[camera] Picamera2 found no cameras")

    provider = backends.OpenCVCameraProvider()
    if provider.list_devices():
        return provider

    print("[camera] No camera hardware found, using dummy camera")
    return DummyCameraProvider()


def describe_resolutions(resolutions: List[Resolution]) -> str:
    return ", ".join(str(named_resolution(r.width, r.height)) for r in resolutions)
