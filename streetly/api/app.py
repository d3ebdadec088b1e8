"""
Streetly Engine API — FastAPI endpoints.

Exposes the engine's control surface to the UI layer:
- Profile and location ingestion
- Tracking start/stop/status
- GPS sample feed and forced scans
- Reconciliation trigger
- Match listing and the notification outbox
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from streetly.errors import (
    EngineError,
    InvalidRequest,
    PermissionDenied,
    ServiceUnavailable,
    StoreFailure,
)
from streetly.geo.providers import QueueLocationProvider
from streetly.geo.sampler import GeoSampler
from streetly.models.config import TrackingConfig
from streetly.models.geo import Coordinate
from streetly.models.profile import UserProfile
from streetly.models.session import SessionState
from streetly.notify.dispatcher import InMemorySink, NotificationSink
from streetly.oracle.client import CompatibilityOracle, GeminiOracle
from streetly.session.tracker import TrackingSession
from streetly.settings import Settings
from streetly.store.sqlite import SQLiteStore

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class ProfilePayload(BaseModel):
    user_id: str
    name: str
    age: Optional[int] = Field(default=None, ge=0)
    bio: str = ""
    interests: List[str] = []

    def to_profile(self) -> UserProfile:
        return UserProfile(
            user_id=self.user_id,
            name=self.name,
            age=self.age,
            bio=self.bio,
            interests=frozenset(i.strip() for i in self.interests if i.strip()),
        )


class LocationPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_meters: Optional[float] = Field(default=None, ge=0)

    def to_coordinate(self) -> Coordinate:
        return Coordinate(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_meters=self.accuracy_meters,
        )


class UserUpsertRequest(ProfilePayload):
    location: Optional[LocationPayload] = None


class StartTrackingRequest(BaseModel):
    user_id: str
    profile: Optional[ProfilePayload] = None


def _status_for(error: EngineError) -> int:
    if isinstance(error, PermissionDenied):
        return 403
    if isinstance(error, (ServiceUnavailable, StoreFailure)):
        return 503
    if isinstance(error, InvalidRequest):
        return 400
    return 500


# --- Application Factory ---

def create_app(
    store: Optional[SQLiteStore] = None,
    provider: Optional[QueueLocationProvider] = None,
    oracle: Optional[CompatibilityOracle] = None,
    sink: Optional[NotificationSink] = None,
    config: Optional[TrackingConfig] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    st = settings or Settings()
    logging.basicConfig(level=st.log_level.upper())

    # Initialize components
    db = store or SQLiteStore(st.db_path)
    lp = provider or QueueLocationProvider()
    orc = oracle or GeminiOracle(st)
    nsink = sink or InMemorySink()
    session = TrackingSession(
        sampler=GeoSampler(lp),
        profiles=db,
        matches=db,
        oracle=orc,
        sink=nsink,
        config=config or st.tracking_config(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await session.stop()

    app = FastAPI(
        title="Streetly Engine API",
        description="Proximity-triggered matchmaking engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.settings = st
    app.state.store = db
    app.state.provider = lp
    app.state.oracle = orc
    app.state.sink = nsink
    app.state.session = session

    def _require_active() -> None:
        if session.state != SessionState.ACTIVE:
            raise HTTPException(409, "Tracking session is not active")

    # === USERS ===

    @app.post("/users")
    async def upsert_user(req: UserUpsertRequest):
        """Create or update a profile, optionally with a location fix."""
        profile = req.to_profile()
        try:
            await db.save_profile(profile)
            if req.location is not None:
                await db.update_location(
                    profile.user_id, req.location.to_coordinate(), datetime.utcnow()
                )
        except StoreFailure as e:
            raise HTTPException(503, str(e))
        return {"status": "saved", "user_id": profile.user_id}

    @app.get("/users/{user_id}")
    async def get_user(user_id: str):
        try:
            profile = await db.get_profile(user_id)
        except StoreFailure as e:
            raise HTTPException(503, str(e))
        if profile is None:
            raise HTTPException(404, "User not found")
        return profile.model_dump(mode="json")

    # === TRACKING ===

    @app.post("/tracking/start")
    async def start_tracking(req: StartTrackingRequest):
        """Start the tracking session for a user."""
        if req.profile is not None:
            if req.profile.user_id != req.user_id:
                raise HTTPException(400, "profile.user_id does not match user_id")
            profile = req.profile.to_profile()
        else:
            try:
                profile = await db.get_profile(req.user_id)
            except StoreFailure as e:
                raise HTTPException(503, str(e))
            if profile is None:
                raise HTTPException(404, "User not found")

        result = await session.start(req.user_id, profile)
        if not result.ok:
            raise HTTPException(_status_for(result.error), result.to_dict())
        return session.status()

    @app.post("/tracking/stop")
    async def stop_tracking():
        """Stop the tracking session."""
        await session.stop()
        return session.status()

    @app.get("/tracking/status")
    async def tracking_status():
        return session.status()

    @app.post("/tracking/location")
    async def push_location(req: LocationPayload):
        """Feed one GPS sample into the active subscription."""
        _require_active()
        lp.push(req.to_coordinate())
        return {"status": "accepted"}

    @app.post("/tracking/scan")
    async def trigger_scan(req: LocationPayload):
        """Force one scan cycle at a position (for testing)."""
        _require_active()
        outcomes = await session.scan(req.to_coordinate())
        return [o.model_dump(mode="json") for o in outcomes]

    @app.post("/tracking/reconcile")
    async def trigger_reconcile():
        """Force one reconciliation pass (for testing)."""
        _require_active()
        try:
            sent = await session.reconcile_once()
        except StoreFailure as e:
            raise HTTPException(503, str(e))
        return {"notified": sent}

    # === MATCHES ===

    @app.get("/matches/{user_id}")
    async def get_current_matches(user_id: str):
        """All matches for a user with both profiles resolved."""
        try:
            views = await session.get_current_matches(user_id)
        except StoreFailure as e:
            raise HTTPException(503, str(e))
        return [v.model_dump(mode="json") for v in views]

    # === NOTIFICATIONS ===

    @app.get("/notifications")
    async def get_notifications():
        """Outbox of the in-memory sink."""
        return list(getattr(nsink, "outbox", []))

    return app


# Default application instance
app = create_app()
