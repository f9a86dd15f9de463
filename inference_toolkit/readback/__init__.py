"""Readback module: asynchronous device to host output transfer."""

from inference_toolkit.readback.queue import ReadbackQueue, ReadbackRequest
from inference_toolkit.readback.textures import DeviceTexture, HostTexture

__all__ = ["DeviceTexture", "HostTexture", "ReadbackQueue", "ReadbackRequest"]
