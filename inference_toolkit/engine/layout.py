"""Process-wide channel-order constraint.

The compute backend needs one consistent tensor layout for the whole process.
Runners claim a layout when they prepare their graph; a runner requesting a
different layout while another one is live is rejected.
"""

from __future__ import annotations

from threading import Lock
from weakref import WeakSet

from loguru import logger

from inference_toolkit.errors import ConfigurationError
from inference_toolkit.types import ChannelOrder


class ChannelOrderRegistry:
    """Holder of the active channel order, shared by every live runner.

    Holders are tracked by weak reference, so a runner that is garbage
    collected without calling ``release`` no longer counts.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._active: ChannelOrder | None = None
        self._holders: WeakSet[object] = WeakSet()

    @property
    def active(self) -> ChannelOrder | None:
        with self._lock:
            return self._active if self._holders else None

    @property
    def holder_count(self) -> int:
        with self._lock:
            return len(self._holders)

    def acquire(self, owner: object, order: ChannelOrder) -> None:
        """Claim ``order`` for ``owner``.

        Raises:
            ConfigurationError: If another live owner holds a different order.
        """
        with self._lock:
            others = [h for h in self._holders if h is not owner]
            if not others:
                self._active = None
            if others and self._active is not order:
                raise ConfigurationError(
                    f"Channel order {order.value} conflicts with active "
                    f"{self._active.value} held by {len(others)} runner(s)"
                )
            if self._active is not order:
                logger.debug(f"Channel order set to {order.value}")
            self._active = order
            self._holders.add(owner)

    def release(self, owner: object) -> None:
        with self._lock:
            self._holders.discard(owner)
            if not self._holders:
                self._active = None

    def reset(self) -> None:
        """Drop every claim."""
        with self._lock:
            self._holders.clear()
            self._active = None


_registry = ChannelOrderRegistry()


def get_channel_order_registry() -> ChannelOrderRegistry:
    return _registry
