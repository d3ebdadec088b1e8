"""
Profile normalization at the store boundary.

The profile blob has been written in several shapes over time: a structured
object, a JSON string of that object, or a bare bio string. Everything past
the store sees exactly one UserProfile shape.
"""

import json
from typing import Any, Iterable, Optional

from streetly.models.profile import UserProfile


def _clean_interests(raw: Any) -> frozenset:
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, Iterable):
        return frozenset()
    cleaned = (str(item).strip() for item in raw if item is not None)
    return frozenset(item for item in cleaned if item)


def _coerce_age(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        age = int(raw)
    except (TypeError, ValueError):
        return None
    return age if age >= 0 else None


def normalize_profile(
    user_id: str,
    name: Optional[str],
    blob: Any,
    age: Any = None,
) -> UserProfile:
    """Build the canonical UserProfile from any stored blob shape."""
    if isinstance(blob, (bytes, bytearray)):
        blob = blob.decode("utf-8", errors="replace")

    if isinstance(blob, str):
        stripped = blob.strip()
        if stripped.startswith("{"):
            try:
                blob = json.loads(stripped)
            except json.JSONDecodeError:
                blob = stripped
        else:
            blob = stripped

    if isinstance(blob, dict):
        bio = blob.get("bio") or blob.get("bioText") or ""
        if not isinstance(bio, str):
            bio = str(bio)
        interests = _clean_interests(blob.get("interests"))
        if age is None:
            age = blob.get("age")
    elif isinstance(blob, str):
        bio, interests = blob, frozenset()
    else:
        bio, interests = "", frozenset()

    return UserProfile(
        user_id=user_id,
        name=(name or "").strip() or "Someone",
        age=_coerce_age(age),
        bio=bio,
        interests=interests,
    )


def profile_blob(profile: UserProfile) -> dict:
    """The structured blob written back to the store."""
    return {
        "bio": profile.bio,
        "interests": sorted(profile.interests),
        "age": profile.age,
    }
