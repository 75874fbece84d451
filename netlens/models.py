"""
Value types shared by the capture session, the camera backends and the
broadcast server.

Also holds the preset lists offered to settings UIs and the JPEG
orientation rule applied to every capture request.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from . import config


class Facing(Enum):
    """Direction a capture device points."""
    FRONT = "front"
    BACK = "back"
    EXTERNAL = "external"


class OrientationMode(Enum):
    AUTO = "auto"
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


@dataclass(frozen=True)
class Resolution:
    """One capture output size."""
    width: int
    height: int
    name: str = ""

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Resolution must be positive, got {self.width}x{self.height}")

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def same_size(self, other: "Resolution") -> bool:
        return self.size == other.size

    @classmethod
    def parse(cls, text: str) -> "Resolution":
        """
        Parse a "WIDTHxHEIGHT" string.

        The name is taken from COMMON_RESOLUTIONS when the size is a
        known one.
        """
        try:
            width, height = (int(part) for part in text.lower().split("x"))
        except ValueError:
            raise ValueError(f"Invalid resolution {text!r}, expected WIDTHxHEIGHT") from None
        return named_resolution(width, height)

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} ({self.width}x{self.height})"
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class FrameIntervalSetting:
    """Target pacing between frames."""
    fps: int
    name: str = ""

    def __post_init__(self):
        if self.fps <= 0:
            raise ValueError(f"fps must be positive, got {self.fps}")

    @property
    def delay_ms(self) -> int:
        return round(1000 / self.fps)

    def __str__(self) -> str:
        return self.name or f"{self.fps} FPS"


@dataclass(frozen=True)
class QualitySetting:
    """JPEG compression level (1-100)."""
    quality: int
    name: str = ""

    def __post_init__(self):
        if not 1 <= self.quality <= 100:
            raise ValueError(f"JPEG quality must be within 1-100, got {self.quality}")

    def __str__(self) -> str:
        return self.name or f"Quality ({self.quality}%)"


@dataclass(frozen=True)
class OrientationSetting:
    mode: OrientationMode
    name: str = ""

    def __str__(self) -> str:
        return self.name or self.mode.value


@dataclass(frozen=True)
class DeviceDescriptor:
    """
    One physical capture device as reported by a camera provider.

    Attributes:
        id: Provider-specific identifier, stable while the device is present
        name: Human readable name ("Back Camera", "Front Camera 2", ...)
        facing: Which way the lens points
        sensor_orientation: Clockwise angle the sensor is mounted at (0/90/180/270)
    """
    id: str
    name: str
    facing: Facing = Facing.BACK
    sensor_orientation: int = 0

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Frame:
    """
    One encoded JPEG image.

    Frames are immutable once created; the broadcaster keeps a reference
    to the most recent one and nothing else holds on to older ones.
    """
    data: bytes
    index: int = 0
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.data:
            raise ValueError("Frame payload must not be empty")

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"Frame(index={self.index}, bytes={len(self.data)}, timestamp={self.timestamp:.3f})"


@dataclass(frozen=True)
class CaptureRequest:
    """Parameters attached to every capture issued by the session."""
    quality: int
    jpeg_orientation: int = 0


@dataclass
class StreamConfig:
    """Live, retunable settings of a capture session."""
    resolution: Resolution
    frame_interval: FrameIntervalSetting
    quality: QualitySetting
    orientation: OrientationMode = OrientationMode.AUTO
    device_orientation: int = 0
    device_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "resolution": {
                "width": self.resolution.width,
                "height": self.resolution.height,
                "name": self.resolution.name,
            },
            "fps": self.frame_interval.fps,
            "frame_delay_ms": self.frame_interval.delay_ms,
            "quality": self.quality.quality,
            "orientation": self.orientation.value,
            "device_orientation": self.device_orientation,
            "device_id": self.device_id,
        }


# Presets offered to settings UIs
AVAILABLE_FPS_SETTINGS = [
    FrameIntervalSetting(15, "15 FPS"),
    FrameIntervalSetting(24, "24 FPS"),
    FrameIntervalSetting(30, "30 FPS"),
    FrameIntervalSetting(60, "60 FPS"),
]

AVAILABLE_QUALITY_SETTINGS = [
    QualitySetting(50, "Low Quality (50%)"),
    QualitySetting(70, "Medium Quality (70%)"),
    QualitySetting(85, "High Quality (85%)"),
    QualitySetting(95, "Maximum Quality (95%)"),
]

AVAILABLE_ORIENTATION_SETTINGS = [
    OrientationSetting(OrientationMode.AUTO, "Auto (Follow Device)"),
    OrientationSetting(OrientationMode.LANDSCAPE, "Force Landscape"),
    OrientationSetting(OrientationMode.PORTRAIT, "Force Portrait"),
]

COMMON_RESOLUTIONS = [
    Resolution(1920, 1080, "Full HD"),
    Resolution(1280, 720, "HD"),
    Resolution(640, 480, "VGA"),
]


def named_resolution(width: int, height: int) -> Resolution:
    """Return the common preset for a size, or an unnamed Resolution."""
    for preset in COMMON_RESOLUTIONS:
        if preset.size == (width, height):
            return preset
    return Resolution(width, height)


def fps_setting(fps: int) -> FrameIntervalSetting:
    """Return the preset for fps, or an unnamed setting."""
    for preset in AVAILABLE_FPS_SETTINGS:
        if preset.fps == fps:
            return preset
    return FrameIntervalSetting(fps)


def quality_setting(quality: int) -> QualitySetting:
    """Return the preset for a quality value, or an unnamed setting."""
    for preset in AVAILABLE_QUALITY_SETTINGS:
        if preset.quality == quality:
            return preset
    return QualitySetting(quality)


def offered_resolutions(supported: Iterable[Resolution]) -> List[Resolution]:
    """
    Resolutions to offer for a device.

    The common presets the device supports, in preset order. If the device
    supports none of them its own sizes are offered instead.
    """
    supported = list(supported)
    sizes = {res.size for res in supported}
    offered = [res for res in COMMON_RESOLUTIONS if res.size in sizes]
    if offered:
        return offered
    return [named_resolution(res.width, res.height) for res in supported]


def name_devices(entries: Iterable[Tuple[str, Facing, int]]) -> List[DeviceDescriptor]:
    """
    Build descriptors for enumerated devices, numbering names per facing.

    Args:
        entries: (device_id, facing, sensor_orientation) in enumeration order

    Returns:
        Descriptors named "Back Camera", "Back Camera 2", "Front Camera", ...
    """
    labels = {
        Facing.FRONT: "Front Camera",
        Facing.BACK: "Back Camera",
        Facing.EXTERNAL: "External Camera",
    }
    counts = {}
    devices = []
    for device_id, facing, sensor_orientation in entries:
        counts[facing] = counts.get(facing, 0) + 1
        name = labels[facing]
        if counts[facing] > 1:
            name = f"{name} {counts[facing]}"
        devices.append(DeviceDescriptor(device_id, name, facing, sensor_orientation))
    return devices


def snap_rotation(degrees: int) -> int:
    """Snap an arbitrary angle to the nearest of 0/90/180/270."""
    return (int(round(degrees / 90.0)) % 4) * 90


def requested_rotation(mode: OrientationMode, device_rotation: int) -> int:
    """Effective rotation for an orientation mode."""
    if mode is OrientationMode.LANDSCAPE:
        return 90
    if mode is OrientationMode.PORTRAIT:
        return 0
    return snap_rotation(device_rotation)


def calculate_jpeg_orientation(
    sensor_orientation: int,
    facing: Facing,
    mode: OrientationMode,
    device_rotation: int = 0
) -> int:
    """
    Clockwise rotation to apply to captured JPEGs.

    Front cameras add the requested rotation to the sensor orientation,
    every other camera subtracts it. There is no separate mirroring step.

    Args:
        sensor_orientation: Sensor mounting angle in degrees
        facing: Lens facing of the active device
        mode: Orientation policy
        device_rotation: Live device rotation in degrees (used by AUTO)

    Returns:
        One of 0, 90, 180, 270
    """
    rotation = requested_rotation(mode, device_rotation)
    if facing is Facing.FRONT:
        return (sensor_orientation + rotation) % 360
    return (sensor_orientation - rotation + 360) % 360


def default_stream_config() -> StreamConfig:
    """Build the initial StreamConfig from environment settings."""
    return StreamConfig(
        resolution=named_resolution(config.WIDTH, config.HEIGHT),
        frame_interval=fps_setting(config.FPS),
        quality=quality_setting(config.JPEG_QUALITY),
        orientation=OrientationMode(config.ORIENTATION),
        device_id=config.DEVICE_ID or None,
    )
