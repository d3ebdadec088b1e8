"""
Location providers — the device-side collaborator behind the GeoSampler.

A provider owns the permission state and the position stream. Throttling by
spatial interval is the provider's job: a stationary user produces no samples.
"""

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from streetly.errors import ServiceUnavailable
from streetly.geo.distance import haversine_meters
from streetly.models.geo import Coordinate

logger = logging.getLogger(__name__)


class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    DENIED_FOREVER = "denied_forever"


class LocationProvider(Protocol):
    """Protocol for device location — pluggable backend."""

    async def is_enabled(self) -> bool: ...

    async def check_permission(self) -> PermissionState: ...

    async def request_permission(self) -> PermissionState: ...

    async def current_position(self) -> Coordinate: ...

    def stream(self, min_distance_meters: float) -> AsyncIterator[Coordinate]: ...


class QueueLocationProvider:
    """
    Push-fed provider. Positions arrive through `push()` (from a device
    bridge or the HTTP surface) and are handed to the active stream, skipping
    any sample closer than the stream's minimum distance to the last one
    delivered.
    """

    def __init__(
        self,
        enabled: bool = True,
        permission: PermissionState = PermissionState.GRANTED,
        grant_on_request: bool = True,
    ):
        self.enabled = enabled
        self.permission = permission
        self.grant_on_request = grant_on_request
        self.permission_requests = 0
        self._queue: "asyncio.Queue[Optional[Coordinate]]" = asyncio.Queue()
        self._last_pushed: Optional[Coordinate] = None

    async def is_enabled(self) -> bool:
        return self.enabled

    async def check_permission(self) -> PermissionState:
        return self.permission

    async def request_permission(self) -> PermissionState:
        self.permission_requests += 1
        if self.permission == PermissionState.DENIED and self.grant_on_request:
            self.permission = PermissionState.GRANTED
        return self.permission

    async def current_position(self) -> Coordinate:
        if self._last_pushed is None:
            raise ServiceUnavailable("No position fix available yet")
        return self._last_pushed

    def push(self, coordinate: Coordinate) -> None:
        """Feed one raw GPS reading."""
        self._last_pushed = coordinate
        self._queue.put_nowait(coordinate)

    def close(self) -> None:
        """End any active stream."""
        self._queue.put_nowait(None)

    async def stream(self, min_distance_meters: float) -> AsyncIterator[Coordinate]:
        last: Optional[Coordinate] = None
        while True:
            coordinate = await self._queue.get()
            if coordinate is None:
                return
            if last is not None and haversine_meters(last, coordinate) < min_distance_meters:
                logger.debug("Dropped sample within %.1fm of the previous one", min_distance_meters)
                continue
            last = coordinate
            yield coordinate
