"""
Tracking Session — the engine's top-level controller.

Wires GeoSampler → CandidateFinder → ProximityFilter → MatchEvaluator →
NotificationDispatcher into one start/stop lifecycle, and runs the periodic
timer that re-scans and reconciles independently of new GPS samples.

States:
  STOPPED → STARTING → ACTIVE → STOPPED

Concurrency:
  GPS samples and timer ticks are two independent producers. Each scan runs
  in its own task so the sampler is never blocked, and candidates within a
  scan are evaluated under a small semaphore. Scans started before `stop()`
  may finish, but their results are dropped.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional, Set

from streetly.discovery.finder import CandidateFinder
from streetly.discovery.proximity import ProximityFilter
from streetly.errors import InvalidRequest, OracleFailure, StoreFailure
from streetly.geo.sampler import GeoSampler, StartResult, SubscriptionHandle
from streetly.matching.evaluator import MatchEvaluator
from streetly.models.config import TrackingConfig
from streetly.models.geo import Coordinate
from streetly.models.match import MatchOutcome, MatchView, OutcomeKind
from streetly.models.profile import CandidateUser, NearbyCandidate, UserProfile
from streetly.models.session import ScanEvent, ScanEventKind, SessionState
from streetly.notify.dispatcher import NotificationDispatcher, NotificationSink
from streetly.oracle.client import CompatibilityOracle
from streetly.store.base import MatchStore, ProfileStore

logger = logging.getLogger(__name__)


class TrackingSession:
    """One logical tracking session per process."""

    def __init__(
        self,
        sampler: GeoSampler,
        profiles: ProfileStore,
        matches: MatchStore,
        oracle: CompatibilityOracle,
        sink: NotificationSink,
        config: Optional[TrackingConfig] = None,
    ):
        self.sampler = sampler
        self.profiles = profiles
        self.matches = matches
        self.sink = sink
        self.config = config or TrackingConfig()

        self.finder = CandidateFinder(
            profiles,
            margin_degrees=self.config.bbox_margin_degrees,
            threshold_feet=self.config.proximity_threshold_feet,
        )
        self.proximity = ProximityFilter(self.config.proximity_threshold_feet)
        self.evaluator = MatchEvaluator(matches, oracle)

        self._state = SessionState.STOPPED
        self._user_id: Optional[str] = None
        self._profile: Optional[UserProfile] = None
        self._generation = 0
        self._handle: Optional[SubscriptionHandle] = None
        self._dispatcher: Optional[NotificationDispatcher] = None
        self._timer_task: Optional["asyncio.Task[None]"] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._scan_tasks: Set["asyncio.Task[List[MatchOutcome]]"] = set()
        self._events: Optional["asyncio.Queue[Optional[ScanEvent]]"] = None
        self._last_position: Optional[Coordinate] = None

    # --- Introspection ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def dispatcher(self) -> Optional[NotificationDispatcher]:
        return self._dispatcher

    @property
    def last_position(self) -> Optional[Coordinate]:
        return self._last_position

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "user_id": self._user_id,
            "last_position": (
                self._last_position.model_dump() if self._last_position else None
            ),
            "notified": len(self._dispatcher.notified) if self._dispatcher else 0,
            "pending_scans": len(self._scan_tasks),
            "config": self.config.model_dump(),
        }

    def _is_current(self, generation: int) -> bool:
        return self._state == SessionState.ACTIVE and self._generation == generation

    # --- Lifecycle ---

    async def start(self, user_id: str, profile: UserProfile) -> StartResult:
        """STOPPED → STARTING → ACTIVE, or back to STOPPED with a typed failure."""
        if self._state != SessionState.STOPPED:
            return StartResult.failure(InvalidRequest(f"Session is {self._state.value}"))
        if not user_id or not user_id.strip():
            return StartResult.failure(InvalidRequest("user_id is required"))
        if profile is None:
            return StartResult.failure(InvalidRequest("profile is required"))

        self._state = SessionState.STARTING
        self._generation += 1
        generation = self._generation
        self._user_id = user_id
        self._profile = profile

        result = await self.sampler.start(
            self.config.min_distance_meters,
            lambda coordinate: self._on_sample(coordinate, generation),
        )
        if not result.ok:
            logger.warning("Tracking start failed for %s: %s", user_id, result.error)
            if self._generation == generation:
                self._state = SessionState.STOPPED
                self._user_id = None
                self._profile = None
            return result
        if self._state != SessionState.STARTING or self._generation != generation:
            # stopped while the subscription was being set up
            await self.sampler.stop(result.handle)
            return StartResult.failure(InvalidRequest("Session was stopped during start"))

        self._handle = result.handle
        self._dispatcher = NotificationDispatcher(
            self.sink,
            matches=self.matches,
            profiles=self.profiles,
            capacity=self.config.notified_capacity,
        )
        self._events = asyncio.Queue(maxsize=self.config.event_buffer_size)
        self._stop_event = asyncio.Event()
        self._state = SessionState.ACTIVE
        self._timer_task = asyncio.create_task(self._run_timer(self._stop_event, generation))
        logger.info("Tracking session active for %s", user_id)
        return result

    async def stop(self) -> None:
        """ACTIVE → STOPPED. Idempotent."""
        if self._state == SessionState.STOPPED:
            return

        # detach everything before the first await so a start() issued while
        # this stop is suspended owns fresh state
        self._state = SessionState.STOPPED
        handle, self._handle = self._handle, None
        timer_task, self._timer_task = self._timer_task, None
        stop_event, self._stop_event = self._stop_event, None
        dispatcher, self._dispatcher = self._dispatcher, None
        events, self._events = self._events, None
        user_id, self._user_id = self._user_id, None
        self._profile = None
        self._last_position = None

        if dispatcher is not None:
            dispatcher.reset()
        if events is not None:
            self._offer(events, None)
        if stop_event is not None:
            stop_event.set()

        try:
            await self.sampler.stop(handle)
        finally:
            if timer_task is not None:
                timer_task.cancel()
                try:
                    await timer_task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Tracking timer for %s had failed", user_id)
            logger.info("Tracking session stopped for %s", user_id)

    def events(self) -> AsyncIterator[ScanEvent]:
        """
        Scan events of the session running at call time. The iterator ends
        when that session stops; it is empty if no session is running.
        Only the newest `event_buffer_size` unread events are kept.
        """
        return self._iter_events(self._events)

    @staticmethod
    async def _iter_events(
        queue: "Optional[asyncio.Queue[Optional[ScanEvent]]]",
    ) -> AsyncIterator[ScanEvent]:
        if queue is None:
            return
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    @staticmethod
    def _offer(queue: "asyncio.Queue[Optional[ScanEvent]]", item: Optional[ScanEvent]) -> None:
        """Put without blocking, dropping the oldest entry when full."""
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(item)

    def _emit(self, event: ScanEvent) -> None:
        if self._events is not None:
            self._offer(self._events, event)

    # --- Sampling ---

    def _on_sample(self, coordinate: Coordinate, generation: int) -> None:
        """Runs on the sampler's channel; never waits for the scan."""
        if not self._is_current(generation):
            return
        self._last_position = coordinate
        task = asyncio.create_task(self._scan_and_publish(coordinate, generation))
        self._scan_tasks.add(task)
        task.add_done_callback(self._scan_tasks.discard)

    async def _scan_and_publish(
        self, origin: Coordinate, generation: int
    ) -> List[MatchOutcome]:
        await self._publish_location(origin, generation)
        try:
            return await self._scan(origin, generation)
        except Exception:
            logger.exception("Scan at (%.6f, %.6f) failed", origin.latitude, origin.longitude)
            return []

    async def _publish_location(self, origin: Coordinate, generation: int) -> None:
        user_id = self._user_id
        if not self._is_current(generation) or user_id is None:
            return
        try:
            await self.profiles.update_location(user_id, origin, datetime.utcnow())
        except StoreFailure as e:
            logger.warning("Could not publish location for %s: %s", user_id, e)

    async def wait_for_scans(self) -> None:
        """Wait until every in-flight scan has finished."""
        while True:
            pending = [t for t in self._scan_tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # --- Scanning ---

    async def scan(self, origin: Coordinate) -> List[MatchOutcome]:
        """Run one discovery → filter → evaluate → notify pass at `origin`."""
        if self._state != SessionState.ACTIVE:
            return []
        self._last_position = origin
        return await self._scan(origin, self._generation)

    async def _scan(self, origin: Coordinate, generation: int) -> List[MatchOutcome]:
        user_id, profile = self._user_id, self._profile
        if not self._is_current(generation) or user_id is None or profile is None:
            return []

        try:
            coarse = await self.finder.find_candidates(
                origin,
                exclude_user_id=user_id,
                active_since=timedelta(minutes=self.config.active_within_minutes),
            )
        except StoreFailure as e:
            logger.warning("Scan abandoned, candidate query failed: %s", e)
            return []

        nearby = self.proximity.filter(origin, coarse)
        if not self._is_current(generation):
            return []
        if nearby:
            self._emit(ScanEvent(
                kind=ScanEventKind.CANDIDATES_FOUND,
                candidates=[
                    NearbyCandidate(
                        user_id=c.user_id, name=c.profile.name, distance_feet=round(feet, 1)
                    )
                    for c, feet in nearby
                ],
            ))
        logger.debug("Scan at (%.6f, %.6f): %d coarse, %d nearby",
                     origin.latitude, origin.longitude, len(coarse), len(nearby))

        semaphore = asyncio.Semaphore(self.config.max_concurrent_evaluations)

        async def bounded(candidate: CandidateUser) -> Optional[MatchOutcome]:
            async with semaphore:
                return await self._evaluate_candidate(user_id, profile, candidate, origin, generation)

        results = await asyncio.gather(*(bounded(c) for c, _ in nearby))
        return [r for r in results if r is not None]

    async def _evaluate_candidate(
        self,
        user_id: str,
        profile: UserProfile,
        candidate: CandidateUser,
        origin: Coordinate,
        generation: int,
    ) -> Optional[MatchOutcome]:
        try:
            outcome = await self.evaluator.evaluate(profile, user_id, candidate, origin)
        except (StoreFailure, OracleFailure) as e:
            logger.warning("Evaluation of %s failed, will retry next scan: %s",
                           candidate.user_id, e)
            return None

        if outcome.kind != OutcomeKind.NEW_MATCH or outcome.record is None:
            return outcome
        if not self._is_current(generation):
            logger.debug("Dropping late match result for %s after stop", candidate.user_id)
            return outcome

        dispatcher = self._dispatcher
        if dispatcher is not None:
            await dispatcher.notify_if_new(outcome.record, candidate.profile.name)
        self._emit(ScanEvent(
            kind=ScanEventKind.MATCH_FOUND,
            match=outcome.record,
            counterpart_name=candidate.profile.name,
        ))
        return outcome

    # --- Periodic timer ---

    async def reconcile_once(self, current_time: Optional[datetime] = None) -> int:
        """One reconciliation pass for the session user."""
        dispatcher, user_id = self._dispatcher, self._user_id
        if self._state != SessionState.ACTIVE or dispatcher is None or user_id is None:
            return 0
        return await dispatcher.reconcile(
            user_id,
            within=timedelta(hours=self.config.reconcile_lookback_hours),
            current_time=current_time,
        )

    async def _tick(self, generation: int) -> None:
        """Re-scan at the last position, then reconcile. Never raises."""
        try:
            position = self._last_position
            if position is not None:
                await self._scan(position, generation)
            if not self._is_current(generation):
                return
            await self.reconcile_once()
        except StoreFailure as e:
            logger.warning("Timer tick failed, retrying next tick: %s", e)
        except Exception:
            logger.exception("Unexpected error in timer tick, retrying next tick")

    async def _run_timer(self, stop_event: asyncio.Event, generation: int) -> None:
        """Fire `_tick` every reconcile interval until the session stops."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self.config.reconcile_interval_seconds,
                )
            except asyncio.TimeoutError:
                await self._tick(generation)

    # --- Queries ---

    async def get_current_matches(self, user_id: str) -> List[MatchView]:
        """All matches for `user_id`, newest first, with both profiles resolved."""
        records = await self.matches.list_matches_for_user(user_id)
        views = []
        for record in records:
            views.append(MatchView(
                record=record,
                user_a=await self.profiles.get_profile(record.user_id_a),
                user_b=await self.profiles.get_profile(record.user_id_b),
            ))
        return views
