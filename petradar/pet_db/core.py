"""
PetRadar Matching Core
----------------------
Sighting intake pipeline:

    persist sighting -> upload photo -> register with similarity index
    -> search date window -> filter candidates -> persist matches -> notify

Steps up to the index registration are fatal to the request. Everything
after that is best effort: each candidate is processed in isolation and its
outcome collected, so one failing candidate never stops the others.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from petradar.common.errors import ConflictError, ValidationError
from petradar.config import ALLOWED_IMAGE_TYPES, MAX_IMAGE_SIZE, MatchingPolicy
from petradar.pet_db.models import (
    ImageUpload, LostPetReport, LostReportFields, Match, PetImage, ReportStatus,
    SightingFields, SightingReport,
)
from petradar.services.notifications import NotificationResult
from petradar.services.similarity import SimilarityHit
from petradar.services.storage import generate_unique_filename

logger = logging.getLogger(__name__)

SIGHTINGS_FOLDER = "sightings"
LOST_PETS_FOLDER = "lost-pets"


@dataclass
class CandidateOutcome:
    """What happened to one search hit"""
    subject_id: str
    similarity: float
    match: Optional[Match] = None
    skipped: Optional[str] = None
    error: Optional[str] = None
    notification: Optional[NotificationResult] = None


@dataclass
class SightingResult:
    sighting: SightingReport
    image: PetImage
    outcomes: List[CandidateOutcome] = field(default_factory=list)
    search_error: Optional[str] = None

    @property
    def matches(self) -> List[Match]:
        return [o.match for o in self.outcomes if o.match is not None]

    @property
    def match_count(self) -> int:
        return len(self.matches)

    def as_json(self) -> Dict[str, Any]:
        return {
            "sighting": self.sighting.as_json(),
            "image": self.image.as_json(),
            "search_error": self.search_error,
            "matches_found": self.match_count,
            "matches": [
                {"match_id": m.id, "report_id": m.report_id, "score": m.score}
                for m in self.matches
            ],
        }


@dataclass
class LostReportResult:
    report: LostPetReport
    image: PetImage

    def as_json(self) -> Dict[str, Any]:
        return {"report": self.report.as_json(), "image": self.image.as_json()}


def search_window(event_date: dt.date, policy: MatchingPolicy = MatchingPolicy()) -> Tuple[dt.date, dt.date]:
    """Inclusive date range of lost reports a sighting can match."""
    return (event_date - dt.timedelta(days=policy.days_before),
            event_date + dt.timedelta(days=policy.days_after))


def validate_image(image: Optional[ImageUpload]) -> None:
    if image is None or not image.data:
        raise ValidationError("An image of the pet is required")
    if image.content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Only JPEG, PNG and WebP images are allowed")
    if image.size > MAX_IMAGE_SIZE:
        raise ValidationError(f"Image too large. Maximum size is {MAX_IMAGE_SIZE // (1024 * 1024)}MB")


class MatchingOrchestrator:
    """Coordinates store, object store, similarity index and notifications"""

    def __init__(self, store, object_store, similarity, dispatcher,
                 policy: MatchingPolicy = MatchingPolicy()) -> None:
        self._store = store
        self._object_store = object_store
        self._similarity = similarity
        self._dispatcher = dispatcher
        self._policy = policy

    # ─── entry points ───────────────────────────────────────────

    def handle_new_sighting(self, reporter_id: str, fields: SightingFields,
                            image: ImageUpload) -> SightingResult:
        validate_image(image)

        sighting = self._store.create_sighting(reporter_id, fields)
        logger.info(f"Sighting {sighting.id} created by {reporter_id}")

        pet_image = self._store_photo(image, SIGHTINGS_FOLDER, sighting.id,
                                      sighting.sighting_date, sighting_id=sighting.id)
        if pet_image.sighting_id and pet_image.sighting_id != sighting.id:
            sighting = self._resume_sighting(sighting, pet_image.sighting_id)

        result = SightingResult(sighting=sighting, image=pet_image)
        try:
            result.outcomes = self.match_candidates(sighting, image)
        except Exception as exc:
            # sighting and photo are durable; the caller sees search_error instead of matches
            logger.error(f"Similarity search failed for sighting {sighting.id}: {exc}")
            result.search_error = str(exc)

        logger.info(f"{result.match_count} matches saved for sighting {sighting.id}")
        return result

    def handle_new_lost_report(self, owner_id: str, fields: LostReportFields,
                               image: ImageUpload) -> LostReportResult:
        validate_image(image)

        report = self._store.create_lost_report(owner_id, fields)
        logger.info(f"Lost report {report.id} created by {owner_id}")

        pet_image = self._store_photo(image, LOST_PETS_FOLDER, report.id,
                                      report.lost_date, report_id=report.id)
        return LostReportResult(report=report, image=pet_image)

    # ─── matching phase ─────────────────────────────────────────

    def match_candidates(self, sighting: SightingReport, image: ImageUpload) -> List[CandidateOutcome]:
        """Search the window around the sighting date and record accepted matches."""
        min_date, max_date = search_window(sighting.sighting_date, self._policy)
        logger.info(f"Search window for {sighting.id}: {min_date.isoformat()} .. {max_date.isoformat()}")

        hits = self._similarity.search(image.data, min_date, max_date,
                                       self._policy.max_results, image.content_type)
        logger.info(f"Found {len(hits)} potential matches for sighting {sighting.id}")

        return [self._process_candidate(sighting, hit) for hit in hits]

    def _process_candidate(self, sighting: SightingReport, hit: SimilarityHit) -> CandidateOutcome:
        outcome = CandidateOutcome(subject_id=hit.subject_id, similarity=hit.similarity)

        if hit.similarity < self._policy.similarity_threshold:
            outcome.skipped = "below threshold"
            return outcome

        try:
            report = self._store.get_lost_report(hit.subject_id)
            if report is None:
                outcome.skipped = "not a lost report"
                return outcome
            if report.status != ReportStatus.ACTIVE:
                logger.info(f"Skipping report {report.id}: status {report.status.value}")
                outcome.skipped = "report not active"
                return outcome

            outcome.match = self._store.create_match(report.id, sighting.id, hit.similarity)
        except ConflictError:
            logger.info(f"Report {hit.subject_id} already matched with sighting {sighting.id}")
            outcome.skipped = "already matched"
            return outcome
        except Exception as exc:
            logger.error(f"Error processing candidate {hit.subject_id}: {exc}")
            outcome.error = str(exc)
            return outcome

        outcome.notification = self._notify(report, outcome.match)
        return outcome

    def _notify(self, report: LostPetReport, match: Match) -> NotificationResult:
        try:
            result = self._dispatcher.notify_match(report.owner_user_id, match.id,
                                                   match.score, report.pet_name)
        except Exception as exc:
            result = NotificationResult(delivered=False, reason=str(exc))
        if not result.delivered:
            logger.warning(f"Owner {report.owner_user_id} not notified of match {match.id}: {result.reason}")
        return result

    # ─── photo registration ─────────────────────────────────────

    def _store_photo(self, image: ImageUpload, folder: str, parent_id: str, event_date: dt.date,
                     report_id: Optional[str] = None, sighting_id: Optional[str] = None) -> PetImage:
        path = f"{folder}/{parent_id}/{generate_unique_filename(image.filename)}"
        url = self._object_store.upload(image.data, path, image.content_type)
        logger.info(f"Image uploaded to storage: {url}")

        registration = self._similarity.register(image.data, parent_id, event_date, image.content_type)
        logger.info(f"Image added to similarity index: {registration.vector_id}")

        try:
            return self._store.create_image(url, registration.vector_id,
                                            report_id=report_id, sighting_id=sighting_id)
        except ConflictError:
            if not registration.is_duplicate:
                raise
            existing = self._store.find_image_by_vector_id(registration.vector_id)
            if existing is None:
                raise
            logger.warning(f"Photo already indexed as {registration.vector_id}; reusing image {existing.id}")
            self._discard_upload(path)
            return existing

    def _discard_upload(self, path: str) -> None:
        try:
            self._object_store.delete(path)
        except Exception as exc:
            logger.warning(f"Could not delete unused upload {path}: {exc}")

    def _resume_sighting(self, duplicate: SightingReport, original_id: str) -> SightingReport:
        """
        A resubmitted photo belongs to an earlier sighting: drop the duplicate
        and continue with the original, so already matched pairs are not repeated.
        """
        original = self._store.get_sighting(original_id)
        if original is None:
            return duplicate
        self._store.delete_sighting(duplicate.id)
        logger.info(f"Sighting {duplicate.id} is a resubmission of {original.id}")
        return original
