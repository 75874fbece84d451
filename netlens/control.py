"""
Flask control and status app.

The MJPEG stream itself is served by the broadcast server on its own port;
this app only embeds it and exposes the session settings.

Provides:
  GET  /            - HTML page showing the video stream
  GET  /health      - JSON health check endpoint
  GET  /config      - Current stream configuration and presets
  POST /config      - Change resolution, device, quality, orientation or fps
  GET  /devices     - Capture devices reported by the provider
  GET  /resolutions - Resolutions offered for the selected device
  POST /start       - Start streaming (optional JSON "port")
  POST /stop        - Stop streaming
"""

from flask import Flask, jsonify, render_template_string, request

from . import config
from .camera import CameraError, ConfigurationFailed, DeviceUnavailable, create_provider
from .models import (
    AVAILABLE_FPS_SETTINGS,
    AVAILABLE_ORIENTATION_SETTINGS,
    AVAILABLE_QUALITY_SETTINGS,
)
from .server import BindError
from .session import CaptureSession, SessionStateError


# HTML template for the index page
INDEX_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>NetLens Camera Stream</title>
    <style>
        body {
            margin: 0;
            padding: 16px;
            font: 13px/1.4 system-ui, sans-serif;
            background: #1b1d21;
            color: #d8dadf;
            text-align: center;
        }
        h1 { font-size: 18px; font-weight: 600; }
        #stream {
            max-width: 100%;
            background: #000;
            border-radius: 4px;
        }
        .info { color: #8b9099; }
        .info a { color: #7fb2ff; }
        #status { margin-top: 8px; }
        .ok { color: #6fd08c; }
        .error { color: #ff7a7a; }
    </style>
</head>
<body>
    <h1>NETLENS STREAM</h1>
    <img alt="Camera Stream" id="stream">
    <div class="info">
        <p>Camera: {{ device }} | {{ resolution }} | {{ fps }} | quality {{ quality }}</p>
        <p>Stream port: {{ port }}</p>
        <p>Health: <a href="/health">/health</a> | Config: <a href="/config">/config</a></p>
    </div>
    <div id="status">Connecting...</div>
    <script>
        const streamUrl = location.protocol + '//' + location.hostname + ':{{ port }}/';
        const img = document.getElementById('stream');
        const status = document.getElementById('status');
        img.src = streamUrl;

        img.onload = function() {
            status.innerHTML = '<span class="ok">STREAMING</span>';
        };

        img.onerror = function() {
            status.innerHTML = '<span class="error">STREAM ERROR - Retrying...</span>';
            setTimeout(() => {
                img.src = streamUrl + '?' + Date.now();
            }, 2000);
        };

        // Periodically check health
        setInterval(async () => {
            try {
                const resp = await fetch('/health');
                const data = await resp.json();
                if (data.session === 'streaming') {
                    status.innerHTML = '<span class="ok">STREAMING</span> | Clients: ' + data.clients
                        + ' | Frames: ' + data.frames;
                } else {
                    status.innerHTML = '<span class="error">' + data.session.toUpperCase() + '</span>';
                }
            } catch (e) {
                // Ignore fetch errors
            }
        }, 5000);
    </script>
</body>
</html>
"""


def _error(message: str, status: int):
    return jsonify({"status": "error", "error": message}), status


def _resolution_dict(res) -> dict:
    return {"width": res.width, "height": res.height, "name": res.name, "label": str(res)}


def create_app(session: CaptureSession) -> Flask:
    """
    Build the control app for a session.

    Args:
        session: The capture session the endpoints read and modify
    """
    app = Flask(__name__)

    @app.route('/')
    def index():
        """Serve the main page with the embedded stream."""
        device = session.active_device
        cfg = session.config
        return render_template_string(
            INDEX_HTML,
            device=device.name if device else "not streaming",
            resolution=session.active_resolution or cfg.resolution,
            fps=cfg.frame_interval,
            quality=cfg.quality.quality,
            port=session.port,
        )

    @app.route('/health')
    def health():
        """
        Health check endpoint.

        Returns JSON with session and server status.
        """
        stats = session.get_stats()
        return jsonify({
            "status": "ok",
            "session": stats["state"],
            "streaming": stats["streaming"],
            "port": session.port,
            "clients": stats["server"]["client_count"],
            "frames": stats["frames_captured"],
            "last_error": stats["last_error"],
            "stats": stats,
        })

    @app.route('/config', methods=['GET'])
    def get_config():
        return jsonify({
            "config": session.config.to_dict(),
            "jpeg_orientation": session.jpeg_orientation(),
            "presets": {
                "fps": [{"fps": s.fps, "name": s.name, "delay_ms": s.delay_ms} for s in AVAILABLE_FPS_SETTINGS],
                "quality": [{"quality": s.quality, "name": s.name} for s in AVAILABLE_QUALITY_SETTINGS],
                "orientation": [{"mode": s.mode.value, "name": s.name} for s in AVAILABLE_ORIENTATION_SETTINGS],
            },
        })

    @app.route('/config', methods=['POST'])
    def update_config():
        """
        Apply settings from a JSON body.

        Quality, orientation, device orientation and fps change the running
        pipeline in place; resolution and device_id restart it.
        """
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _error("Expected a JSON object", 400)

        try:
            if "quality" in body:
                session.set_quality(int(body["quality"]))
            if "orientation" in body:
                session.set_orientation(str(body["orientation"]))
            if "device_orientation" in body:
                session.set_device_orientation_degrees(int(body["device_orientation"]))
            if "fps" in body:
                session.set_frame_interval(int(body["fps"]))
            if "device_id" in body:
                session.set_device(str(body["device_id"]))
            if "resolution" in body:
                session.set_resolution(str(body["resolution"]))
        except (TypeError, ValueError) as e:
            return _error(str(e), 400)
        except (DeviceUnavailable, ConfigurationFailed) as e:
            print(f"[control] Restart failed: {e}")
            return _error(str(e), 503)
        except (BindError, SessionStateError) as e:
            print(f"[control] Restart failed: {e}")
            return _error(str(e), 409)

        return jsonify({"status": "ok", "config": session.config.to_dict()})

    @app.route('/devices')
    def devices():
        active = session.active_device
        return jsonify({
            "provider": session.provider.name,
            "active": active.id if active else None,
            "devices": [
                {
                    "id": d.id,
                    "name": d.name,
                    "facing": d.facing.value,
                    "sensor_orientation": d.sensor_orientation,
                }
                for d in session.available_devices()
            ],
        })

    @app.route('/resolutions')
    def resolutions():
        return jsonify({
            "selected": _resolution_dict(session.resolution),
            "resolutions": [_resolution_dict(r) for r in session.available_resolutions()],
        })

    @app.route('/start', methods=['POST'])
    def start():
        body = request.get_json(silent=True) or {}
        port = body.get("port")
        if port is not None and not isinstance(port, int):
            return _error(f"Invalid port {port!r}", 400)

        try:
            session.start(port)
        except (DeviceUnavailable, ConfigurationFailed) as e:
            return _error(str(e), 503)
        except (BindError, SessionStateError) as e:
            return _error(str(e), 409)

        print(f"[control] Streaming started on port {session.port}")
        return jsonify({"status": "ok", "state": session.state.value, "port": session.port})

    @app.route('/stop', methods=['POST'])
    def stop():
        session.stop()
        print("[control] Streaming stopped")
        return jsonify({"status": "ok", "state": session.state.value})

    return app


def run_server(use_dummy_camera: bool = False, backend: str = None):
    """
    Start streaming and serve the control app until interrupted.

    Args:
        use_dummy_camera: If True, use dummy camera for testing
        backend: Camera backend name; defaults to NETLENS_BACKEND
    """
    print("=" * 50)
    print("  NETLENS - Network Camera Stream")
    print("=" * 50)

    config.print_config()
    print()

    print("[control] Initializing camera...")
    try:
        provider = create_provider(backend or config.BACKEND, use_dummy=use_dummy_camera)
    except CameraError as e:
        print(f"[control] Camera error: {e}")
        print("[control] Starting with dummy camera for testing...")
        provider = create_provider(use_dummy=True)

    session = CaptureSession(provider)
    try:
        session.start(config.PORT)
    except (CameraError, BindError) as e:
        print(f"[control] Streaming not started: {e}")
        print("[control] Use POST /start to retry")

    app = create_app(session)

    print()
    print(f"[control] Stream URL:  http://<HOST_IP>:{session.port}/")
    print(f"[control] Control URL: http://<HOST_IP>:{config.CONTROL_PORT}/")
    print(f"[control] Health URL:  http://<HOST_IP>:{config.CONTROL_PORT}/health")
    print()
    print("[control] Press Ctrl+C to stop")
    print()

    try:
        app.run(
            host=config.HOST,
            port=config.CONTROL_PORT,
            threaded=True,
            debug=False
        )
    except KeyboardInterrupt:
        print("\n[control] Shutting down...")
    finally:
        session.stop()
        print("[control] Stopped")
