"""Tick-driven device to host readback transport.

``request`` never blocks: it snapshots the device texture and queues a
transfer. The host calls ``tick`` once per frame; every request issued before
that tick completes in issue order and its callback runs on the caller's
thread. There is no cancellation, so when several requests target the same
host buffer the last one to complete wins.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from inference_toolkit.errors import SizeMismatchError, TransferError
from inference_toolkit.readback.textures import TEXEL_DTYPE

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from inference_toolkit.readback.textures import DeviceTexture

TransferFn = Callable[[bytes], bytes]


@dataclass
class ReadbackRequest:
    """In-flight device to host transfer.

    Attributes:
        request_id: Sequence number, in issue order.
        issued_frame: Tick count when the request was issued.
        expected_nbytes: Size of the source texture.
        payload: Device texture contents captured at issue time.
        done: Set once the transport has completed the request.
        error: Transfer failure, if any.
        data: Transferred bytes on success.
        completed_frame: Tick count when the request completed.
    """
    request_id: int
    issued_frame: int
    expected_nbytes: int
    payload: bytes
    done: bool = False
    error: TransferError | None = None
    data: bytes | None = None
    completed_frame: int | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def latency_frames(self) -> int | None:
        """Ticks between issue and completion."""
        if self.completed_frame is None:
            return None
        return self.completed_frame - self.issued_frame

    def get_data(self) -> NDArray[np.float32]:
        if not self.done:
            raise TransferError(f"Readback {self.request_id} has not completed")
        if self.error is not None or self.data is None:
            raise TransferError(f"Readback {self.request_id} failed: {self.error}")
        return np.frombuffer(self.data, dtype=TEXEL_DTYPE).copy()


ReadbackCallback = Callable[[ReadbackRequest], None]


def _identity(payload: bytes) -> bytes:
    return payload


class ReadbackQueue:
    """Queue of pending readbacks, completed by the host scheduler tick.

    Args:
        transfer: Device to host copy. Receives the captured payload and
            returns the bytes that arrive on the host. May raise TransferError.
    """

    def __init__(self, transfer: TransferFn | None = None) -> None:
        self._transfer = transfer or _identity
        self._pending: deque[tuple[ReadbackRequest, ReadbackCallback]] = deque()
        self._frame = 0
        self._next_id = 0

    @property
    def frame(self) -> int:
        return self._frame

    @property
    def pending(self) -> int:
        return len(self._pending)

    def request(self, texture: DeviceTexture, callback: ReadbackCallback) -> ReadbackRequest:
        """Queue a readback of ``texture``; returns immediately."""
        request = ReadbackRequest(
            request_id=self._next_id,
            issued_frame=self._frame,
            expected_nbytes=texture.nbytes,
            payload=texture.read_bytes(),
        )
        self._next_id += 1
        self._pending.append((request, callback))
        return request

    def tick(self) -> int:
        """Advance one frame and deliver completions.

        Returns:
            Number of requests completed.
        """
        self._frame += 1
        batch = len(self._pending)
        for _ in range(batch):
            request, callback = self._pending.popleft()
            self._complete(request)
            callback(request)
        return batch

    def _complete(self, request: ReadbackRequest) -> None:
        try:
            data = self._transfer(request.payload)
        except TransferError as e:
            request.error = e
        else:
            if len(data) != request.expected_nbytes:
                request.error = SizeMismatchError(expected=request.expected_nbytes, actual=len(data))
            else:
                request.data = data
        request.done = True
        request.completed_frame = self._frame
        if request.error is not None:
            logger.debug(f"Readback {request.request_id} completed with error: {request.error}")
