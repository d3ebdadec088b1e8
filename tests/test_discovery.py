"""Tests for the CandidateFinder and the ProximityFilter."""

import math
from datetime import datetime, timedelta

import pytest

from streetly.discovery.finder import CandidateFinder
from streetly.discovery.proximity import ProximityFilter
from streetly.geo.distance import EARTH_RADIUS_M, distance_feet, feet_to_meters
from streetly.models.geo import Coordinate
from streetly.models.profile import CandidateUser, UserProfile
from streetly.store.memory import InMemoryStore

ORIGIN = Coordinate(latitude=40.0, longitude=-74.0)


def _north_of(origin: Coordinate, feet: float) -> Coordinate:
    meters = feet_to_meters(feet)
    return Coordinate(
        latitude=origin.latitude + math.degrees(meters / EARTH_RADIUS_M),
        longitude=origin.longitude,
    )


def _make_candidate(user_id: str, location) -> CandidateUser:
    return CandidateUser(
        user_id=user_id,
        profile=UserProfile(user_id=user_id, name=user_id.title()),
        last_known_location=location,
        last_seen_at=datetime.utcnow(),
    )


class TestCandidateFinder:
    def setup_method(self):
        self.store = InMemoryStore()
        self.finder = CandidateFinder(self.store)
        self.now = datetime.utcnow()

    @pytest.mark.asyncio
    async def test_finds_recent_users_in_box(self):
        self.store.put_user("bob", "Bob", location=_north_of(ORIGIN, 40), last_seen_at=self.now)
        self.store.put_user("cat", "Cat", location=_north_of(ORIGIN, 400), last_seen_at=self.now)

        found = await self.finder.find_candidates(
            ORIGIN, exclude_user_id="alice", active_since=timedelta(hours=1), current_time=self.now,
        )
        # the coarse box is wider than the threshold; both are returned
        assert {c.user_id for c in found} == {"bob", "cat"}

    @pytest.mark.asyncio
    async def test_excludes_requesting_user(self):
        self.store.put_user("alice", "Alice", location=ORIGIN, last_seen_at=self.now)
        found = await self.finder.find_candidates(
            ORIGIN, exclude_user_id="alice", active_since=timedelta(hours=1), current_time=self.now,
        )
        assert found == []

    @pytest.mark.asyncio
    async def test_excludes_stale_users(self):
        self.store.put_user(
            "bob", "Bob", location=_north_of(ORIGIN, 10),
            last_seen_at=self.now - timedelta(hours=2),
        )
        found = await self.finder.find_candidates(
            ORIGIN, exclude_user_id="alice", active_since=timedelta(hours=1), current_time=self.now,
        )
        assert found == []

    @pytest.mark.asyncio
    async def test_excludes_users_far_outside_box(self):
        far = Coordinate(latitude=40.1, longitude=-74.0)
        self.store.put_user("bob", "Bob", location=far, last_seen_at=self.now)
        found = await self.finder.find_candidates(
            ORIGIN, exclude_user_id="alice", active_since=timedelta(hours=1), current_time=self.now,
        )
        assert found == []

    def test_box_covers_threshold(self):
        box = self.finder.bounding_box(ORIGIN)
        assert box.contains(_north_of(ORIGIN, 50))
        assert box.contains(Coordinate(latitude=40.0, longitude=-74.0 + 0.0025))

    def test_box_widens_for_large_threshold(self):
        finder = CandidateFinder(self.store, threshold_feet=5000)
        edge = _north_of(ORIGIN, 5000)
        assert not self.finder.bounding_box(ORIGIN).contains(edge)
        assert finder.bounding_box(ORIGIN).contains(edge)

    def test_box_widens_longitude_at_high_latitude(self):
        origin = Coordinate(latitude=85.0, longitude=10.0)
        finder = CandidateFinder(self.store, threshold_feet=500)
        box = finder.bounding_box(origin)
        assert box.max_longitude - origin.longitude > box.max_latitude - origin.latitude


class TestProximityFilter:
    def setup_method(self):
        self.filter = ProximityFilter(threshold_feet=50.0)

    def test_keeps_within_and_drops_beyond(self):
        near = _make_candidate("near", _north_of(ORIGIN, 40))
        far = _make_candidate("far", _north_of(ORIGIN, 200))
        kept = self.filter.filter(ORIGIN, [near, far])
        assert [c.user_id for c, _ in kept] == ["near"]
        assert kept[0][1] == pytest.approx(40.0, abs=0.01)

    def test_boundary_is_inclusive(self):
        exact = _make_candidate("edge", _north_of(ORIGIN, 45))
        feet = distance_feet(ORIGIN, exact.last_known_location)
        kept = ProximityFilter(threshold_feet=feet).filter(ORIGIN, [exact])
        assert len(kept) == 1

        just_over = ProximityFilter(threshold_feet=feet - 1e-6).filter(ORIGIN, [exact])
        assert just_over == []

    def test_skips_candidates_without_location(self):
        kept = self.filter.filter(ORIGIN, [_make_candidate("ghost", None)])
        assert kept == []

    def test_preserves_input_order(self):
        candidates = [
            _make_candidate("c", _north_of(ORIGIN, 30)),
            _make_candidate("a", _north_of(ORIGIN, 5)),
            _make_candidate("b", _north_of(ORIGIN, 20)),
        ]
        kept = self.filter.filter(ORIGIN, candidates)
        assert [c.user_id for c, _ in kept] == ["c", "a", "b"]

    def test_empty_input(self):
        assert self.filter.filter(ORIGIN, []) == []
