"""
Owner-side operations on reports, sightings and matches.

Every mutation looks up the owning user first; a match is controlled by the
owner of its lost report.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from petradar.common.errors import AuthorizationError, NotFoundError
from petradar.pet_db.models import (
    LostPetReport, Match, MatchStatus, PetImage, SightingReport, parse_status,
)

logger = logging.getLogger(__name__)


class MatchService:

    def __init__(self, store, dispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher

    def _owned(self, user_id: str, match_id: str):
        match, report = self._store.get_match_with_report(match_id)
        if report.owner_user_id != user_id:
            raise AuthorizationError("You are not allowed to modify this match")
        return match, report

    def list_for_owner(self, user_id: str, status: Any = None,
                       limit: int = 50, offset: int = 0) -> List[Match]:
        return self._store.list_matches_for_owner(user_id, status, limit, offset)

    def get_detail(self, user_id: str, match_id: str) -> Dict[str, Any]:
        """Match joined with its report and sighting, visible to both parties."""
        match, report = self._store.get_match_with_report(match_id)
        sighting = self._store.get_sighting(match.sighting_id)
        if sighting is None:
            raise NotFoundError("Sighting for match not found")
        if user_id not in (report.owner_user_id, sighting.reporter_user_id):
            raise AuthorizationError("You are not allowed to view this match")

        detail = match.as_json()
        detail["report"] = report.as_json()
        detail["sighting"] = sighting.as_json()
        return detail

    def update_status(self, user_id: str, match_id: str, status: Any) -> Match:
        return self.update(user_id, match_id, status=parse_status(MatchStatus, status))

    def update(self, user_id: str, match_id: str, score: Any = None, status: Any = None) -> Match:
        before, report = self._owned(user_id, match_id)
        match = self._store.update_match(match_id, score=score, status=status)
        logger.info(f"Match {match_id} updated to {match.status.value} ({match.score:.2f})")

        if match.status == MatchStatus.CONFIRMED and before.status != MatchStatus.CONFIRMED:
            self._announce_confirmation(match, report)
        return match

    def delete(self, user_id: str, match_id: str) -> None:
        self._owned(user_id, match_id)
        self._store.delete_match(match_id)
        logger.info(f"Match {match_id} deleted by {user_id}")

    def _announce_confirmation(self, match: Match, report: LostPetReport) -> None:
        """Best effort: the confirmation is already committed."""
        try:
            sighting = self._store.get_sighting(match.sighting_id)
            if sighting is None:
                return
            owner = self._store.get_user(report.owner_user_id)
            self._dispatcher.notify_match_confirmed(
                sighting.reporter_user_id,
                report.pet_name,
                owner.phone_number if owner else None,
            )
        except Exception as exc:
            logger.error(f"Could not announce confirmation of match {match.id}: {exc}")


class ReportService:
    """Creator-only status changes and deletions for lost reports and sightings"""

    def __init__(self, store, object_store=None, similarity=None) -> None:
        self._store = store
        self._object_store = object_store
        self._similarity = similarity

    def set_report_status(self, user_id: str, report_id: str, status: Any) -> LostPetReport:
        self._own_report(user_id, report_id)
        return self._store.set_lost_report_status(report_id, status)

    def delete_report(self, user_id: str, report_id: str) -> None:
        self._own_report(user_id, report_id)
        self._release(self._store.delete_lost_report(report_id))

    def set_sighting_status(self, user_id: str, sighting_id: str, status: Any) -> SightingReport:
        self._own_sighting(user_id, sighting_id)
        return self._store.set_sighting_status(sighting_id, status)

    def delete_sighting(self, user_id: str, sighting_id: str) -> None:
        self._own_sighting(user_id, sighting_id)
        self._release(self._store.delete_sighting(sighting_id))

    def _own_report(self, user_id: str, report_id: str) -> LostPetReport:
        report = self._store.get_lost_report(report_id)
        if report is None:
            raise NotFoundError("Lost report not found")
        if report.owner_user_id != user_id:
            raise AuthorizationError("You are not allowed to modify this report")
        return report

    def _own_sighting(self, user_id: str, sighting_id: str) -> SightingReport:
        sighting = self._store.get_sighting(sighting_id)
        if sighting is None:
            raise NotFoundError("Sighting not found")
        if sighting.reporter_user_id != user_id:
            raise AuthorizationError("You are not allowed to modify this sighting")
        return sighting

    def _release(self, image: Optional[PetImage]) -> None:
        """Best-effort removal of the photo from the index and the bucket."""
        if image is None:
            return
        if self._similarity is not None:
            try:
                self._similarity.delete(image.vector_id)
            except Exception as exc:
                logger.warning(f"Could not remove {image.vector_id} from index: {exc}")
        if self._object_store is not None:
            path = self._object_store.path_for_url(image.url)
            if path:
                try:
                    self._object_store.delete(path)
                except Exception as exc:
                    logger.warning(f"Could not delete stored object {path}: {exc}")
