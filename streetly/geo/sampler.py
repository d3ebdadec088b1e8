"""
GeoSampler — owns the device location subscription.

Behavioral Contract:
- Refuses to subscribe unless the provider is enabled and permission is granted
- Reports permission/service failures once, as a StartResult; never raises them
  into the sampling path and never retries
- Delivers samples to the callback in provider order
- Applies no time-based throttle; the provider's spatial interval is the only one
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from streetly.errors import EngineError, PermissionDenied, ServiceUnavailable
from streetly.geo.providers import LocationProvider, PermissionState
from streetly.models.geo import Coordinate

logger = logging.getLogger(__name__)

SampleCallback = Callable[[Coordinate], Union[Awaitable[None], None]]


class SubscriptionHandle:
    """A cancellable, running location subscription."""

    def __init__(self, task: "asyncio.Task[None]", min_distance_meters: float):
        self.task = task
        self.min_distance_meters = min_distance_meters

    @property
    def active(self) -> bool:
        return not self.task.done()


class StartResult:
    """Outcome of a start attempt: a handle on success, a typed error otherwise."""

    def __init__(
        self,
        ok: bool,
        handle: Optional[SubscriptionHandle] = None,
        error: Optional[EngineError] = None,
    ):
        self.ok = ok
        self.handle = handle
        self.error = error

    @classmethod
    def success(cls, handle: Optional[SubscriptionHandle] = None) -> "StartResult":
        return cls(ok=True, handle=handle)

    @classmethod
    def failure(cls, error: EngineError) -> "StartResult":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "error": type(self.error).__name__ if self.error else None,
            "detail": str(self.error) if self.error else None,
        }


class GeoSampler:
    """Wraps a LocationProvider with permission gating and a cancellable stream."""

    def __init__(self, provider: LocationProvider):
        self.provider = provider

    async def _ensure_access(self) -> Optional[EngineError]:
        """Return the failure that blocks location access, or None."""
        if not await self.provider.is_enabled():
            return ServiceUnavailable("Location services are disabled")

        permission = await self.provider.check_permission()
        if permission == PermissionState.DENIED:
            permission = await self.provider.request_permission()

        if permission in (PermissionState.DENIED, PermissionState.DENIED_FOREVER):
            return PermissionDenied(f"Location permission {permission.value}")
        return None

    async def current_position(self) -> Union[Coordinate, EngineError]:
        """One-shot fix, subject to the same checks as `start`."""
        error = await self._ensure_access()
        if error is not None:
            return error
        try:
            return await self.provider.current_position()
        except ServiceUnavailable as e:
            return e

    async def start(
        self, min_distance_meters: float, on_sample: SampleCallback
    ) -> StartResult:
        """Subscribe to the provider stream. No partial subscription on failure."""
        error = await self._ensure_access()
        if error is not None:
            logger.warning("Location subscription refused: %s", error)
            return StartResult.failure(error)

        task = asyncio.create_task(self._pump(min_distance_meters, on_sample))
        logger.info("Location subscription started (min distance %.1fm)", min_distance_meters)
        return StartResult.success(SubscriptionHandle(task, min_distance_meters))

    async def _pump(self, min_distance_meters: float, on_sample: SampleCallback) -> None:
        try:
            async for coordinate in self.provider.stream(min_distance_meters):
                result = on_sample(coordinate)
                if asyncio.iscoroutine(result):
                    await result
        except ServiceUnavailable as e:
            logger.warning("Location stream ended: %s", e)

    async def stop(self, handle: Optional[SubscriptionHandle]) -> None:
        """Cancel a subscription. Safe to call on a finished or missing handle."""
        if handle is None or handle.task.done():
            return
        handle.task.cancel()
        try:
            await handle.task
        except asyncio.CancelledError:
            pass
        logger.info("Location subscription stopped")
