"""
Hardware camera backends.

  - Picamera2Provider: Raspberry Pi camera modules through libcamera
  - OpenCVCameraProvider: USB / V4L2 webcams through OpenCV

Both encode on the capture worker thread so quality and rotation changes
take effect on the very next frame without reconfiguring the device.
"""

from typing import List, Optional

import cv2
import numpy as np

from .camera import (
    CameraDevice,
    CameraProvider,
    CaptureBuffer,
    ConfigurationFailed,
    DeviceDisconnected,
    DeviceError,
    DeviceUnavailable,
    encode_jpeg,
)
from .models import (
    COMMON_RESOLUTIONS,
    CaptureRequest,
    DeviceDescriptor,
    Facing,
    Resolution,
    name_devices,
    named_resolution,
)

# Picamera2 is only available on Raspberry Pi OS with libcamera
try:
    from picamera2 import Picamera2
    PICAMERA2_AVAILABLE = True
except ImportError:
    PICAMERA2_AVAILABLE = False


# libcamera properties::Location
_LOCATION_FACING = {
    0: Facing.FRONT,
    1: Facing.BACK,
    2: Facing.EXTERNAL,
}


def _sort_by_area(resolutions: List[Resolution]) -> List[Resolution]:
    unique = {}
    for res in resolutions:
        unique.setdefault(res.size, res)
    return sorted(unique.values(), key=lambda r: r.width * r.height, reverse=True)


class Picamera2Camera(CameraDevice):
    """
    Wrapper around an open Picamera2 instance.

    Captures RGB frames from the main stream and encodes them with Pillow
    at the quality and rotation of each request.
    """

    def __init__(self, descriptor: DeviceDescriptor, picam2):
        super().__init__(descriptor)
        self._picam2 = picam2
        self._started = False

    def supported_resolutions(self) -> List[Resolution]:
        return picamera2_resolutions(self._picam2)

    def configure(self, resolution: Resolution) -> None:
        print(f"[camera] Configuring Picamera2 for {resolution}")
        try:
            video_config = self._picam2.create_video_configuration(
                main={"size": resolution.size, "format": "RGB888"},
                buffer_count=2,
                queue=False,
            )
            self._picam2.configure(video_config)
            self._picam2.start()
            self._started = True
        except Exception as e:
            raise ConfigurationFailed(f"Failed to configure camera: {e}") from e

    def acquire_latest(self, request: CaptureRequest) -> Optional[CaptureBuffer]:
        if self._picam2 is None:
            raise DeviceDisconnected(f"{self.descriptor.name} is closed")
        try:
            frame = self._picam2.capture_array("main")
        except Exception as e:
            raise DeviceError(f"Capture failed: {e}") from e

        # RGB888 is stored as [B, G, R]
        rgb = np.ascontiguousarray(frame[:, :, 2::-1])
        return CaptureBuffer(encode_jpeg(rgb, request.quality, request.jpeg_orientation))

    def close(self) -> None:
        picam2, self._picam2 = self._picam2, None
        if picam2 is None:
            return
        if self._started:
            try:
                picam2.stop()
            except Exception as e:
                print(f"[camera] Error stopping Picamera2: {e}")
        try:
            picam2.close()
        except Exception as e:
            print(f"[camera] Error closing Picamera2: {e}")
        print(f"[camera] Closed {self.descriptor.name}")


def picamera2_resolutions(picam2) -> List[Resolution]:
    """
    Sizes a Picamera2 camera can output.

    The sensor's native mode sizes, plus any common size the ISP can scale
    down to.
    """
    sizes = []
    for mode in picam2.sensor_modes:
        width, height = mode["size"]
        sizes.append(named_resolution(width, height))
    if not sizes:
        return []
    max_w = max(res.width for res in sizes)
    max_h = max(res.height for res in sizes)
    sizes.extend(res for res in COMMON_RESOLUTIONS if res.width <= max_w and res.height <= max_h)
    return _sort_by_area(sizes)


class Picamera2Provider(CameraProvider):
    """Raspberry Pi cameras reported by libcamera."""

    name = "picamera2"

    def __init__(self):
        if not PICAMERA2_AVAILABLE:
            raise DeviceUnavailable(
                "Picamera2 is not installed or not available.\n\n"
                "This backend requires a Raspberry Pi with:\n"
                "  1. Raspberry Pi OS (Bullseye or later)\n"
                "  2. A connected camera module\n"
                "  3. Picamera2 library installed\n\n"
                "To install on Raspberry Pi OS:\n"
                "  sudo apt install -y python3-picamera2\n\n"
                "Test with: libcamera-hello"
            )
        self._open: dict = {}

    def list_devices(self) -> List[DeviceDescriptor]:
        try:
            infos = Picamera2.global_camera_info()
        except Exception as e:
            print(f"[camera] Error listing cameras: {e}")
            return []
        return name_devices(
            (
                str(info.get("Num", index)),
                _LOCATION_FACING.get(info.get("Location"), Facing.EXTERNAL),
                int(info.get("Rotation", 0)),
            )
            for index, info in enumerate(infos)
        )

    def supported_resolutions(self, device_id: str) -> List[Resolution]:
        device = self._open.get(device_id)
        if device is not None and device._picam2 is not None:
            return device.supported_resolutions()
        try:
            picam2 = Picamera2(camera_num=int(device_id))
        except Exception as e:
            print(f"[camera] Cannot query camera {device_id}: {e}")
            return []
        try:
            return picamera2_resolutions(picam2)
        finally:
            picam2.close()

    def open_device(self, device_id: str) -> CameraDevice:
        descriptor = self.find_device(device_id)
        if descriptor is None:
            raise DeviceUnavailable(f"No camera with id {device_id!r}")
        print(f"[camera] Opening Picamera2 camera {device_id} ({descriptor.name})")
        try:
            picam2 = Picamera2(camera_num=int(device_id))
        except Exception as e:
            raise DeviceUnavailable(f"Failed to open camera {device_id}: {e}") from e
        device = Picamera2Camera(descriptor, picam2)
        self._open[device_id] = device
        return device


class OpenCVCamera(CameraDevice):
    """A V4L2/USB webcam opened through cv2.VideoCapture."""

    # Consecutive failed reads before the device is considered gone
    MAX_READ_FAILURES = 10

    def __init__(self, descriptor: DeviceDescriptor, capture, probe_sizes: List[Resolution]):
        super().__init__(descriptor)
        self._capture = capture
        self._probe_sizes = probe_sizes
        self._failures = 0

    def supported_resolutions(self) -> List[Resolution]:
        return probe_resolutions(self._capture, self._probe_sizes)

    def configure(self, resolution: Resolution) -> None:
        print(f"[camera] Configuring {self.descriptor.name} for {resolution}")
        cap = self._capture
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, resolution.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, resolution.height)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        actual = (int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        if actual != resolution.size:
            raise ConfigurationFailed(
                f"{self.descriptor.name} produced {actual[0]}x{actual[1]} instead of {resolution}"
            )

    def acquire_latest(self, request: CaptureRequest) -> Optional[CaptureBuffer]:
        if self._capture is None:
            raise DeviceDisconnected(f"{self.descriptor.name} is closed")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            self._failures += 1
            if self._failures >= self.MAX_READ_FAILURES:
                raise DeviceDisconnected(f"{self.descriptor.name} stopped delivering frames")
            return None
        self._failures = 0

        rotate = {
            90: cv2.ROTATE_90_CLOCKWISE,
            180: cv2.ROTATE_180,
            270: cv2.ROTATE_90_COUNTERCLOCKWISE,
        }.get(request.jpeg_orientation)
        if rotate is not None:
            frame = cv2.rotate(frame, rotate)

        ok, encoded = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, request.quality])
        if not ok:
            raise DeviceError("JPEG encoding failed")
        return CaptureBuffer(encoded.tobytes())

    def close(self) -> None:
        capture, self._capture = self._capture, None
        if capture is None:
            return
        capture.release()
        print(f"[camera] Closed {self.descriptor.name}")


def probe_resolutions(capture, candidates: List[Resolution]) -> List[Resolution]:
    """Try each candidate size on an open capture and keep those it accepts."""
    supported = []
    for res in candidates:
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, res.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, res.height)
        actual = (int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)), int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        if actual == res.size:
            supported.append(res)
    return supported


class OpenCVCameraProvider(CameraProvider):
    """Webcams at /dev/video0 .. /dev/video{max_devices - 1}."""

    name = "opencv"

    def __init__(self, max_devices: int = 4, probe_sizes: List[Resolution] = None):
        self.max_devices = max_devices
        self.probe_sizes = list(probe_sizes or COMMON_RESOLUTIONS)
        self._devices: Optional[List[DeviceDescriptor]] = None

    def list_devices(self) -> List[DeviceDescriptor]:
        found = []
        for index in range(self.max_devices):
            cap = cv2.VideoCapture(index)
            try:
                if cap.isOpened():
                    found.append((str(index), Facing.EXTERNAL, 0))
            finally:
                cap.release()
        self._devices = name_devices(found)
        return list(self._devices)

    def find_device(self, device_id: Optional[str]) -> Optional[DeviceDescriptor]:
        if device_id is None:
            return None
        for device in self._devices if self._devices is not None else self.list_devices():
            if device.id == device_id:
                return device
        return None

    def supported_resolutions(self, device_id: str) -> List[Resolution]:
        cap = cv2.VideoCapture(int(device_id))
        try:
            if not cap.isOpened():
                return []
            return probe_resolutions(cap, self.probe_sizes)
        finally:
            cap.release()

    def open_device(self, device_id: str) -> CameraDevice:
        descriptor = self.find_device(device_id)
        if descriptor is None:
            raise DeviceUnavailable(f"No webcam with id {device_id!r}")
        print(f"[camera] Opening webcam {device_id} ({descriptor.name})")
        cap = cv2.VideoCapture(int(device_id))
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(f"Failed to open webcam {device_id}")
        return OpenCVCamera(descriptor, cap, self.probe_sizes)
