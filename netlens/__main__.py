"""
Entry point for running netlens as a module.

Usage:
    python3 -m netlens [--dummy] [--backend NAME]

Options:
    --dummy          Use dummy camera for testing without hardware
    --backend NAME   Camera backend: auto, picamera2, opencv or dummy
"""

import sys

from .control import run_server


def main():
    """Main entry point."""
    args = sys.argv[1:]
    use_dummy = "--dummy" in args or "-d" in args

    if "--help" in args or "-h" in args:
        print(__doc__)
        print("\nEnvironment variables:")
        print("  NETLENS_HOST          Bind address (default: 0.0.0.0)")
        print("  NETLENS_PORT          MJPEG stream port (default: 8082)")
        print("  NETLENS_CONTROL_PORT  Control app port (default: 8080)")
        print("  NETLENS_BACKEND       Camera backend (default: auto)")
        print("  NETLENS_DEVICE        Capture device id (default: first device)")
        print("  NETLENS_FPS           Target FPS (default: 30)")
        print("  NETLENS_WIDTH         Frame width (default: 1280)")
        print("  NETLENS_HEIGHT        Frame height (default: 720)")
        print("  NETLENS_QUALITY       JPEG quality 1-100 (default: 85)")
        print("  NETLENS_ORIENTATION   auto, landscape or portrait (default: auto)")
        sys.exit(0)

    backend = None
    if "--backend" in args:
        index = args.index("--backend")
        if index + 1 >= len(args):
            print("--backend requires a value")
            sys.exit(2)
        backend = args[index + 1]

    run_server(use_dummy_camera=use_dummy, backend=backend)


if __name__ == "__main__":
    main()
