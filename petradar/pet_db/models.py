"""
PetRadar Models and Utilities
-----------------------------
Entities, closed status enumerations with their transition tables,
and input normalisation helpers shared by the store and the pipeline.
"""

from __future__ import annotations

import datetime as dt
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from math import radians, cos, sin, asin, sqrt
from typing import Any, Dict, Optional, Type, TypeVar

from google.cloud.firestore import GeoPoint

from petradar.common.errors import ValidationError


class ReportStatus(Enum):
    ACTIVE = "Active"
    FOUND = "Found"


class SightingStatus(Enum):
    ON_STREET = "OnStreet"
    SHELTERED = "Sheltered"
    REUNITED = "Reunited"


class MatchStatus(Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"


# Anything missing from these tables is not a defined transition.
TRANSITIONS = {
    ReportStatus: {
        ReportStatus.ACTIVE: {ReportStatus.FOUND},
        ReportStatus.FOUND: set(),
    },
    SightingStatus: {
        SightingStatus.ON_STREET: {SightingStatus.SHELTERED, SightingStatus.REUNITED},
        SightingStatus.SHELTERED: set(),
        SightingStatus.REUNITED: set(),
    },
    MatchStatus: {
        MatchStatus.PENDING: {MatchStatus.CONFIRMED, MatchStatus.REJECTED},
        MatchStatus.CONFIRMED: set(),
        MatchStatus.REJECTED: set(),
    },
}

S = TypeVar("S", ReportStatus, SightingStatus, MatchStatus)


def parse_status(status_cls: Type[S], value: Any) -> S:
    """Coerce a raw value into one of the closed status enumerations."""
    if isinstance(value, status_cls):
        return value
    try:
        return status_cls(value)
    except ValueError:
        allowed = ", ".join(s.value for s in status_cls)
        raise ValidationError(f"Invalid status {value!r}. Allowed values: {allowed}")


def transition(current: S, target: Any) -> S:
    """
    Validate a status change against the transition table.

    Staying in the same state is accepted as a no-op.
    """
    target = parse_status(type(current), target)
    if target == current:
        return current
    if target not in TRANSITIONS[type(current)][current]:
        raise ValidationError(f"Cannot change status from {current.value} to {target.value}")
    return target


# ─── entities ───────────────────────────────────────────────────

@dataclass
class User:
    id: str
    email: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    push_token: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "full_name": self.full_name,
            "phone_number": self.phone_number,
            "push_notification_token": self.push_token,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, doc_id: str, payload: Dict[str, Any]) -> "User":
        return cls(
            id=doc_id,
            email=payload["email"],
            full_name=payload.get("full_name"),
            phone_number=payload.get("phone_number"),
            push_token=payload.get("push_notification_token"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )


@dataclass
class LostPetReport:
    id: str
    owner_user_id: str
    pet_name: str
    species: str
    lost_date: dt.date
    status: ReportStatus = ReportStatus.ACTIVE
    breed: Optional[str] = None
    description: Optional[str] = None
    location: Optional[GeoPoint] = None
    last_seen_location_text: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_user_id": self.owner_user_id,
            "pet_name": self.pet_name,
            "species": self.species,
            "breed": self.breed,
            "description": self.description,
            "status": self.status.value,
            "lost_date": date_to_timestamp(self.lost_date),
            "location": self.location,
            "location_geohash": geohash_for(self.location),
            "last_seen_location_text": self.last_seen_location_text,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, doc_id: str, payload: Dict[str, Any]) -> "LostPetReport":
        return cls(
            id=doc_id,
            owner_user_id=payload["owner_user_id"],
            pet_name=payload.get("pet_name"),
            species=payload.get("species"),
            breed=payload.get("breed"),
            description=payload.get("description"),
            status=ReportStatus(payload["status"]),
            lost_date=timestamp_to_date(payload["lost_date"]),
            location=payload.get("location"),
            last_seen_location_text=payload.get("last_seen_location_text"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )

    def as_json(self) -> Dict[str, Any]:
        return _json_ready(self.id, "report_id", self.to_dict())


@dataclass
class SightingReport:
    id: str
    reporter_user_id: str
    sighting_date: dt.date
    status: SightingStatus = SightingStatus.ON_STREET
    description: Optional[str] = None
    location: Optional[GeoPoint] = None
    location_text: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reporter_user_id": self.reporter_user_id,
            "description": self.description,
            "status": self.status.value,
            "sighting_date": date_to_timestamp(self.sighting_date),
            "location": self.location,
            "location_geohash": geohash_for(self.location),
            "location_text": self.location_text,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, doc_id: str, payload: Dict[str, Any]) -> "SightingReport":
        return cls(
            id=doc_id,
            reporter_user_id=payload["reporter_user_id"],
            description=payload.get("description"),
            status=SightingStatus(payload["status"]),
            sighting_date=timestamp_to_date(payload["sighting_date"]),
            location=payload.get("location"),
            location_text=payload.get("location_text"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )

    def as_json(self) -> Dict[str, Any]:
        return _json_ready(self.id, "sighting_id", self.to_dict())


@dataclass
class PetImage:
    """A photo registered with the similarity index; owned by exactly one parent"""
    id: str
    url: str
    vector_id: str
    report_id: Optional[str] = None
    sighting_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "vector_id": self.vector_id,
            "report_id": self.report_id,
            "sighting_id": self.sighting_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, doc_id: str, payload: Dict[str, Any]) -> "PetImage":
        return cls(
            id=doc_id,
            url=payload["url"],
            vector_id=payload["vector_id"],
            report_id=payload.get("report_id"),
            sighting_id=payload.get("sighting_id"),
            created_at=payload.get("created_at"),
        )

    def as_json(self) -> Dict[str, Any]:
        return _json_ready(self.id, "image_id", self.to_dict())


@dataclass
class Match:
    id: str
    report_id: str
    sighting_id: str
    score: float
    status: MatchStatus = MatchStatus.PENDING
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "sighting_id": self.sighting_id,
            "score": self.score,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, doc_id: str, payload: Dict[str, Any]) -> "Match":
        return cls(
            id=doc_id,
            report_id=payload["report_id"],
            sighting_id=payload["sighting_id"],
            score=float(payload["score"]),
            status=MatchStatus(payload["status"]),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )

    def as_json(self) -> Dict[str, Any]:
        return _json_ready(self.id, "match_id", self.to_dict())


# ─── creation inputs ────────────────────────────────────────────

@dataclass
class SightingFields:
    sighting_date: Any
    description: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_text: Optional[str] = None


@dataclass
class LostReportFields:
    pet_name: Optional[str]
    species: Optional[str]
    lost_date: Any
    breed: Optional[str] = None
    description: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_seen_location_text: Optional[str] = None


@dataclass
class ImageUpload:
    """Raw photo as received from the client"""
    data: bytes
    content_type: str = "image/jpeg"
    filename: str = "pet.jpg"
    size: int = field(init=False)

    def __post_init__(self):
        self.size = len(self.data or b"")


# ─── helpers ────────────────────────────────────────────────────

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def parse_event_date(value: Any, field_name: str = "date") -> dt.date:
    """Accept a date, a datetime or a string starting with YYYY-MM-DD."""
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    if not _DATE_PREFIX.match(text):
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format")
    try:
        return dt.date.fromisoformat(text[:10])
    except ValueError:
        raise ValidationError(f"{field_name} is not a valid calendar date")


def validate_score(value: Any) -> float:
    """Similarity scores live in [0, 1]."""
    if isinstance(value, bool):
        raise ValidationError("score must be a number between 0.0 and 1.0")
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValidationError("score must be a number between 0.0 and 1.0")
    if math.isnan(score) or not 0.0 <= score <= 1.0:
        raise ValidationError("score must be between 0.0 and 1.0")
    return score


def date_to_timestamp(value: dt.date) -> dt.datetime:
    # Firestore stores datetimes only
    return dt.datetime(value.year, value.month, value.day, tzinfo=dt.timezone.utc)


def timestamp_to_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    return parse_event_date(value)


def geohash_for(point: Optional[GeoPoint]) -> Optional[str]:
    if point is None:
        return None
    from petradar.pet_db.geo import encode_geohash
    return encode_geohash(point)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def normalize_email(email: str) -> str:
    """Normalize email address for consistent storage"""
    return email.lower().strip()


def is_valid_coordinates(latitude: float, longitude: float) -> bool:
    """Validate latitude and longitude ranges"""
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points in meters using Haversine formula"""
    if lat1 == lat2 and lon1 == lon2:
        return 0.0

    R = 6_371_000  # Earth radius in meters

    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return R * c


def _json_ready(doc_id: str, id_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    from petradar.pet_db.geo import get_coordinates

    out = {id_key: doc_id}
    for key, value in payload.items():
        if key == "location_geohash":
            continue
        if key.endswith("_date") and isinstance(value, dt.datetime):
            value = value.date()
        if isinstance(value, (dt.datetime, dt.date)):
            value = value.isoformat()
        out[key] = value
    if "location" in out:
        out = get_coordinates("location")(out)
    return out
