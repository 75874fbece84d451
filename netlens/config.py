"""
Configuration management for netlens.

All settings can be overridden via environment variables:
  NETLENS_HOST           - Bind address for stream and control servers (default: 0.0.0.0)
  NETLENS_PORT           - MJPEG stream port (default: 8082)
  NETLENS_CONTROL_PORT   - Control/status web app port (default: 8080)
  NETLENS_BACKEND        - Camera backend: auto, picamera2, opencv, dummy (default: auto)
  NETLENS_DEVICE         - Capture device id, empty for the first device (default: "")
  NETLENS_FPS            - Target frames per second (default: 30)
  NETLENS_WIDTH          - Frame width in pixels (default: 1280)
  NETLENS_HEIGHT         - Frame height in pixels (default: 720)
  NETLENS_QUALITY        - JPEG quality 1-100 (default: 85)
  NETLENS_ORIENTATION    - auto, landscape or portrait (default: auto)
  NETLENS_SEND_TIMEOUT   - Seconds a client write may block before the client is dropped (default: 5)
  NETLENS_START_TIMEOUT  - Seconds to wait for the device pipeline on start (default: 5)
  NETLENS_STOP_TIMEOUT   - Seconds to wait for the capture worker on stop (default: 2)
"""

import os


def _env_int(name: str, default: int) -> int:
    """Get an integer from environment variable with fallback."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        print(f"[config] Warning: {name}={val} is not a valid integer, using default={default}")
        return default


def _env_float(name: str, default: float) -> float:
    """Get a float from environment variable with fallback."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        print(f"[config] Warning: {name}={val} is not a valid number, using default={default}")
        return default


def _env_str(name: str, default: str) -> str:
    """Get a string from environment variable with fallback."""
    return os.environ.get(name, default)


def _env_choice(name: str, default: str, choices: tuple) -> str:
    """Get one of a fixed set of lowercase strings with fallback."""
    val = _env_str(name, default).strip().lower()
    if val not in choices:
        print(f"[config] Warning: {name}={val} is not one of {', '.join(choices)}, using default={default}")
        return default
    return val


# Server settings
HOST = _env_str("NETLENS_HOST", "0.0.0.0")
PORT = _env_int("NETLENS_PORT", 8082)
CONTROL_PORT = _env_int("NETLENS_CONTROL_PORT", 8080)
SEND_TIMEOUT = _env_float("NETLENS_SEND_TIMEOUT", 5.0)

# Camera settings
BACKEND = _env_choice("NETLENS_BACKEND", "auto", ("auto", "picamera2", "opencv", "dummy"))
DEVICE_ID = _env_str("NETLENS_DEVICE", "")
FPS = _env_int("NETLENS_FPS", 30)
WIDTH = _env_int("NETLENS_WIDTH", 1280)
HEIGHT = _env_int("NETLENS_HEIGHT", 720)
JPEG_QUALITY = _env_int("NETLENS_QUALITY", 85)
ORIENTATION = _env_choice("NETLENS_ORIENTATION", "auto", ("auto", "landscape", "portrait"))

# Session timing
START_TIMEOUT = _env_float("NETLENS_START_TIMEOUT", 5.0)
STOP_TIMEOUT = _env_float("NETLENS_STOP_TIMEOUT", 2.0)



def print_config():
    """Print current configuration to stdout."""
    print("[config] Current settings:")
    print(f"  HOST          = {HOST}")
    print(f"  PORT          = {PORT}")
    print(f"  CONTROL_PORT  = {CONTROL_PORT}")
    print(f"  BACKEND       = {BACKEND}")
    print(f"  DEVICE        = {DEVICE_ID or '(first available)'}")
    print(f"  FPS           = {FPS}")
    print(f"  WIDTH         = {WIDTH}")
    print(f"  HEIGHT        = {HEIGHT}")
    print(f"  QUALITY       = {JPEG_QUALITY}")
    print(f"  ORIENTATION   = {ORIENTATION}")
