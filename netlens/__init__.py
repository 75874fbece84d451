"""
netlens - Live camera MJPEG streaming

This package captures JPEG frames from a single camera device and serves
them to any number of HTTP clients as a multipart/x-mixed-replace stream.
"""

__version__ = "0.1.0"
