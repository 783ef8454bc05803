"""
PetRadar Firestore store
------------------------
Data-access layer for users, lost reports, sightings, pet images and matches.

Uniqueness rules are expressed through deterministic document ids inserted
with ``create()``, which Firestore rejects atomically when the id exists:

    matches/<report_id>_<sighting_id>        one match per pair
    pet_images/report_<id> | sighting_<id>   one photo per parent
    pet_image_vectors/<sha1(vector_id)>      one photo per vector id
"""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from petradar.common.errors import ConflictError, NotFoundError, ValidationError
from petradar.pet_db.geo import RadiusFilter, make_point
from petradar.pet_db.models import (
    LostPetReport, LostReportFields, Match, MatchStatus, PetImage, ReportStatus,
    SightingFields, SightingReport, SightingStatus, User,
    date_to_timestamp, normalize_email, parse_event_date, parse_status,
    transition, utcnow, validate_score,
)

logger = logging.getLogger(__name__)

USERS = "users"
LOST_REPORTS = "lost_pet_reports"
SIGHTINGS = "sighting_reports"
IMAGES = "pet_images"
VECTOR_IDS = "pet_image_vectors"
MATCHES = "matches"

DEFAULT_PAGE_SIZE = 50
USER_FIELDS = {"full_name": "full_name",
               "phone_number": "phone_number",
               "push_token": "push_notification_token"}


def match_doc_id(report_id: str, sighting_id: str) -> str:
    return f"{report_id}_{sighting_id}"


def vector_doc_id(vector_id: str) -> str:
    # vector ids are opaque and may contain "/"
    return hashlib.sha1(vector_id.encode("utf-8")).hexdigest()


def image_doc_id(report_id: Optional[str] = None, sighting_id: Optional[str] = None) -> str:
    if (report_id is None) == (sighting_id is None):
        raise ValidationError("A pet image must belong to exactly one of a report or a sighting")
    return f"report_{report_id}" if report_id is not None else f"sighting_{sighting_id}"


def _optional_point(latitude: Any, longitude: Any):
    if latitude is None and longitude is None:
        return None
    if latitude is None or longitude is None:
        raise ValidationError("Both latitude and longitude are required for a location")
    return make_point(longitude, latitude)


class PetStore:
    """All reads and writes against the Firestore collections"""

    def __init__(self, db: firestore.Client) -> None:
        self._db = db

    def _col(self, name: str):
        return self._db.collection(name)

    def _exists_where(self, collection: str, field: str, value: Any, exclude_id: Optional[str] = None) -> bool:
        query = self._col(collection).where(filter=FieldFilter(field, "==", value)).limit(2)
        return any(snap.id != exclude_id for snap in query.stream())

    # ─── users ──────────────────────────────────────────────────

    def get_user(self, user_id: str) -> Optional[User]:
        snap = self._col(USERS).document(user_id).get()
        return User.from_dict(snap.id, snap.to_dict()) if snap.exists else None

    def ensure_user(self, user_id: str, email: str, full_name: Optional[str] = None) -> User:
        """Return the user, creating it on first authenticated contact."""
        existing = self.get_user(user_id)
        if existing:
            return existing

        email = normalize_email(email or "")
        if "@" not in email:
            raise ValidationError("Invalid email address")
        if self._exists_where(USERS, "email", email):
            raise ConflictError("Email already registered")

        now = utcnow()
        user = User(id=user_id, email=email, full_name=full_name, created_at=now, updated_at=now)
        try:
            self._col(USERS).document(user_id).create(user.to_dict())
        except AlreadyExists:
            # concurrent first contact
            return self.get_user(user_id)
        logger.info(f"User created: {user_id}")
        return user

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        unknown = set(changes) - set(USER_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown user fields: {', '.join(sorted(unknown))}")

        phone = changes.get("phone_number")
        if phone and self._exists_where(USERS, "phone_number", phone, exclude_id=user_id):
            raise ConflictError("Phone number already registered")

        payload = {USER_FIELDS[key]: value for key, value in changes.items()}
        payload["updated_at"] = utcnow()
        self._col(USERS).document(user_id).update(payload)
        logger.info(f"User updated: {user_id}")
        return self.get_user(user_id)

    def clear_push_token(self, user_id: str) -> None:
        self._col(USERS).document(user_id).update({
            "push_notification_token": None,
            "updated_at": utcnow(),
        })

    # ─── lost reports ───────────────────────────────────────────

    def create_lost_report(self, owner_user_id: str, fields: LostReportFields) -> LostPetReport:
        if not fields.pet_name or not fields.species:
            raise ValidationError("pet_name, species and lost_date are required")
        now = utcnow()
        report = LostPetReport(
            id=str(uuid.uuid4()),
            owner_user_id=owner_user_id,
            pet_name=fields.pet_name,
            species=fields.species,
            breed=fields.breed or None,
            description=fields.description or None,
            status=ReportStatus.ACTIVE,
            lost_date=parse_event_date(fields.lost_date, "lost_date"),
            location=_optional_point(fields.latitude, fields.longitude),
            last_seen_location_text=fields.last_seen_location_text or None,
            created_at=now,
            updated_at=now,
        )
        self._col(LOST_REPORTS).document(report.id).create(report.to_dict())
        logger.info(f"Lost report created: {report.id}")
        return report

    def get_lost_report(self, report_id: str) -> Optional[LostPetReport]:
        snap = self._col(LOST_REPORTS).document(report_id).get()
        return LostPetReport.from_dict(snap.id, snap.to_dict()) if snap.exists else None

    def set_lost_report_status(self, report_id: str, status: Any) -> LostPetReport:
        report = self.get_lost_report(report_id)
        if report is None:
            raise NotFoundError("Lost report not found")
        report.status = transition(report.status, status)
        report.updated_at = utcnow()
        self._col(LOST_REPORTS).document(report_id).update({
            "status": report.status.value,
            "updated_at": report.updated_at,
        })
        return report

    def list_lost_reports(self, status: Any = None, species: Optional[str] = None,
                          date_from: Any = None, date_to: Any = None,
                          owner_user_id: Optional[str] = None,
                          near: Optional[RadiusFilter] = None,
                          limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[LostPetReport]:
        equals = {
            "status": parse_status(ReportStatus, status).value if status else None,
            "species": species,
            "owner_user_id": owner_user_id,
        }
        docs = self._list(LOST_REPORTS, equals, "lost_date", date_from, date_to, near, limit, offset)
        return [LostPetReport.from_dict(doc_id, data) for doc_id, data in docs]

    def delete_lost_report(self, report_id: str) -> Optional[PetImage]:
        """Delete a report with its image and matches; returns the removed image."""
        return self._cascade_delete(LOST_REPORTS, report_id, "report_id",
                                    image_doc_id(report_id=report_id))

    # ─── sightings ──────────────────────────────────────────────

    def create_sighting(self, reporter_user_id: str, fields: SightingFields) -> SightingReport:
        now = utcnow()
        sighting = SightingReport(
            id=str(uuid.uuid4()),
            reporter_user_id=reporter_user_id,
            sighting_date=parse_event_date(fields.sighting_date, "sighting_date"),
            status=SightingStatus.ON_STREET,
            description=fields.description or None,
            location=_optional_point(fields.latitude, fields.longitude),
            location_text=fields.location_text or None,
            created_at=now,
            updated_at=now,
        )
        self._col(SIGHTINGS).document(sighting.id).create(sighting.to_dict())
        logger.info(f"Sighting created: {sighting.id}")
        return sighting

    def get_sighting(self, sighting_id: str) -> Optional[SightingReport]:
        snap = self._col(SIGHTINGS).document(sighting_id).get()
        return SightingReport.from_dict(snap.id, snap.to_dict()) if snap.exists else None

    def set_sighting_status(self, sighting_id: str, status: Any) -> SightingReport:
        sighting = self.get_sighting(sighting_id)
        if sighting is None:
            raise NotFoundError("Sighting not found")
        sighting.status = transition(sighting.status, status)
        sighting.updated_at = utcnow()
        self._col(SIGHTINGS).document(sighting_id).update({
            "status": sighting.status.value,
            "updated_at": sighting.updated_at,
        })
        return sighting

    def list_sightings(self, status: Any = None, date_from: Any = None, date_to: Any = None,
                       near: Optional[RadiusFilter] = None,
                       limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[SightingReport]:
        equals = {"status": parse_status(SightingStatus, status).value if status else None}
        docs = self._list(SIGHTINGS, equals, "sighting_date", date_from, date_to, near, limit, offset)
        return [SightingReport.from_dict(doc_id, data) for doc_id, data in docs]

    def delete_sighting(self, sighting_id: str) -> Optional[PetImage]:
        """Delete a sighting with its image and matches; returns the removed image."""
        return self._cascade_delete(SIGHTINGS, sighting_id, "sighting_id",
                                    image_doc_id(sighting_id=sighting_id))

    # ─── pet images ─────────────────────────────────────────────

    def create_image(self, url: str, vector_id: str,
                     report_id: Optional[str] = None, sighting_id: Optional[str] = None) -> PetImage:
        doc_id = image_doc_id(report_id=report_id, sighting_id=sighting_id)
        if not url or not vector_id:
            raise ValidationError("A pet image needs a storage url and a vector id")
        image = PetImage(id=doc_id, url=url, vector_id=vector_id,
                         report_id=report_id, sighting_id=sighting_id, created_at=utcnow())
        image_ref = self._col(IMAGES).document(doc_id)

        # image and vector claim commit together or not at all
        batch = self._db.batch()
        batch.create(image_ref, image.to_dict())
        batch.create(self._col(VECTOR_IDS).document(vector_doc_id(vector_id)), {"image_id": doc_id})
        try:
            batch.commit()
        except AlreadyExists:
            if image_ref.get().exists:
                raise ConflictError("This report or sighting already has an image")
            raise ConflictError(f"Vector id already registered: {vector_id}")
        logger.info(f"Pet image stored: {doc_id} -> {vector_id}")
        return image

    def get_image(self, report_id: Optional[str] = None, sighting_id: Optional[str] = None) -> Optional[PetImage]:
        snap = self._col(IMAGES).document(image_doc_id(report_id, sighting_id)).get()
        return PetImage.from_dict(snap.id, snap.to_dict()) if snap.exists else None

    def find_image_by_vector_id(self, vector_id: str) -> Optional[PetImage]:
        query = self._col(IMAGES).where(filter=FieldFilter("vector_id", "==", vector_id)).limit(1)
        for snap in query.stream():
            return PetImage.from_dict(snap.id, snap.to_dict())
        return None

    # ─── matches ────────────────────────────────────────────────

    def create_match(self, report_id: str, sighting_id: str, score: Any,
                     status: Any = MatchStatus.PENDING) -> Match:
        """
        Insert a match for a (report, sighting) pair.

        Raises ConflictError when the pair is already matched; the check and
        the insert are a single atomic ``create()``.
        """
        score = validate_score(score)
        status = parse_status(MatchStatus, status)
        if self.get_lost_report(report_id) is None:
            raise NotFoundError(f"Lost report not found: {report_id}")
        if self.get_sighting(sighting_id) is None:
            raise NotFoundError(f"Sighting not found: {sighting_id}")

        now = utcnow()
        match = Match(id=match_doc_id(report_id, sighting_id), report_id=report_id,
                      sighting_id=sighting_id, score=score, status=status,
                      created_at=now, updated_at=now)
        try:
            self._col(MATCHES).document(match.id).create(match.to_dict())
        except AlreadyExists:
            raise ConflictError(f"Report {report_id} is already matched with sighting {sighting_id}")
        return match

    def get_match(self, match_id: str) -> Optional[Match]:
        snap = self._col(MATCHES).document(match_id).get()
        return Match.from_dict(snap.id, snap.to_dict()) if snap.exists else None

    def get_match_with_report(self, match_id: str) -> Tuple[Match, LostPetReport]:
        """The match and the lost report whose owner controls it."""
        match = self.get_match(match_id)
        if match is None:
            raise NotFoundError("Match not found")
        report = self.get_lost_report(match.report_id)
        if report is None:
            raise NotFoundError("Lost report for match not found")
        return match, report

    def update_match(self, match_id: str, score: Any = None, status: Any = None) -> Match:
        if score is None and status is None:
            raise ValidationError("Nothing to update: provide score and/or status")
        match = self.get_match(match_id)
        if match is None:
            raise NotFoundError("Match not found")

        if score is not None:
            match.score = validate_score(score)
        if status is not None:
            match.status = transition(match.status, status)
        match.updated_at = utcnow()

        self._col(MATCHES).document(match_id).update({
            "score": match.score,
            "status": match.status.value,
            "updated_at": match.updated_at,
        })
        return match

    def delete_match(self, match_id: str) -> None:
        if self.get_match(match_id) is None:
            raise NotFoundError("Match not found")
        self._col(MATCHES).document(match_id).delete()

    def list_matches_for_report(self, report_id: str, status: Any = None) -> List[Match]:
        query = self._col(MATCHES).where(filter=FieldFilter("report_id", "==", report_id))
        if status:
            query = query.where(filter=FieldFilter("status", "==", parse_status(MatchStatus, status).value))
        return [Match.from_dict(snap.id, snap.to_dict()) for snap in query.stream()]

    def list_matches_for_owner(self, owner_user_id: str, status: Any = None,
                               limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Match]:
        """Matches on every report of the owner, best score first."""
        reports = self._col(LOST_REPORTS).where(filter=FieldFilter("owner_user_id", "==", owner_user_id))
        matches: List[Match] = []
        for snap in reports.stream():
            matches.extend(self.list_matches_for_report(snap.id, status))
        matches.sort(key=lambda m: (m.score, m.created_at or dt.datetime.min.replace(tzinfo=dt.timezone.utc)),
                     reverse=True)
        return matches[offset:offset + limit]

    # ─── internals ──────────────────────────────────────────────

    def _cascade_delete(self, collection: str, doc_id: str, parent_field: str,
                        image_id: str) -> Optional[PetImage]:
        parent_ref = self._col(collection).document(doc_id)
        if not parent_ref.get().exists:
            raise NotFoundError(f"{collection}/{doc_id} not found")

        image_ref = self._col(IMAGES).document(image_id)
        image_snap = image_ref.get()
        image = PetImage.from_dict(image_snap.id, image_snap.to_dict()) if image_snap.exists else None

        batch = self._db.batch()
        batch.delete(parent_ref)
        batch.delete(image_ref)
        if image is not None:
            batch.delete(self._col(VECTOR_IDS).document(vector_doc_id(image.vector_id)))
        matches =self._col(MATCHES).where(filter=FieldFilter(parent_field, "==", doc_id))
        removed = 0
        for snap in matches.stream():
            batch.delete(snap.reference)
            removed += 1
        batch.commit()
        logger.info(f"Deleted {collection}/{doc_id} with {removed} matches")
        return image

    def _list(self, collection: str, equals: Dict[str, Any], date_field: str,
              date_from: Any, date_to: Any, near: Optional[RadiusFilter],
              limit: int, offset: int) -> List[Tuple[str, Dict[str, Any]]]:
        lower = date_to_timestamp(parse_event_date(date_from, "date_from")) if date_from else None
        upper = date_to_timestamp(parse_event_date(date_to, "date_to")) if date_to else None

        base = self._col(collection)
        for field, value in equals.items():
            if value is not None:
                base = base.where(filter=FieldFilter(field, "==", value))

        if near is None:
            query = base
            if lower is not None:
                query = query.where(filter=FieldFilter(date_field, ">=", lower))
            if upper is not None:
                query = query.where(filter=FieldFilter(date_field, "<=", upper))
            query = query.order_by(date_field, direction=firestore.Query.DESCENDING)
            query = query.offset(offset).limit(limit)
            return [(snap.id, snap.to_dict()) for snap in query.stream()]

        # Radius listings: closest first, date range applied after the geo scan
        docs = []
        for doc_id, data in self._scan_radius(base, near):
            when = data.get(date_field)
            if lower is not None and when < lower:
                continue
            if upper is not None and when > upper:
                continue
            docs.append((doc_id, data))
        distance_of = near.distance_of
        docs.sort(key=lambda item: distance_of(item[1]))
        return docs[offset:offset + limit]

    @staticmethod
    def _scan_radius(base, near: RadiusFilter) -> Iterator[Tuple[str, Dict[str, Any]]]:
        seen = set()
        for query in near.queries(base):
            for snap in query.stream():
                if snap.id in seen:
                    continue
                seen.add(snap.id)
                data = snap.to_dict()
                if near.contains(data):
                    yield snap.id, data
