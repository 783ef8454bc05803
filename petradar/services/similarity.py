"""
Similarity search client
------------------------
HTTP client for the visual-similarity service that indexes pet photos.

    register(image, subject_id, event_date) -> Registration
    search(image, min_date, max_date, max_results) -> [SimilarityHit]

A photo the service already knows is reported as a duplicate registration,
not as an error.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from petradar.common.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    vector_id: str
    is_duplicate: bool = False


@dataclass(frozen=True)
class SimilarityHit:
    subject_id: str
    similarity: float


def normalize_score(score: Any) -> float:
    """Scores come as cosine similarity; keep them inside [0, 1]."""
    return max(0.0, min(1.0, float(score)))


class SimilaritySearchClient:
    """Thin wrapper around the similarity service REST API"""

    def __init__(self, base_url: str, timeout: float = 60,
                 session: Optional[requests.Session] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @staticmethod
    def _unwrap(response: requests.Response, action: str) -> Dict[str, Any]:
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError(f"Similarity service {action} failed: {exc}")
        if not payload.get("success"):
            raise ExternalServiceError(f"Similarity service {action} did not succeed")
        return payload.get("data") or {}

    def health_check(self) -> Dict[str, Any]:
        try:
            response = self._session.get(self._url("/health"), timeout=self._timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(f"Similarity service unreachable: {exc}")
        data = self._unwrap(response, "health check")
        logger.info(f"Similarity service health: {data.get('status')}")
        return data

    def register(self, image_bytes: bytes, subject_id: str, event_date: dt.date,
                 content_type: str = "image/jpeg") -> Registration:
        logger.info(f"Registering photo for {subject_id} on {event_date.isoformat()}")
        try:
            response = self._session.post(
                self._url("/add_pet/"),
                params={"pet_id": subject_id, "event_date": event_date.isoformat()},
                files={"image": ("pet.jpg", image_bytes, content_type)},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ExternalServiceError(f"Similarity service unreachable: {exc}")

        if response.status_code == 409:
            try:
                detail = response.json().get("detail") or {}
            except ValueError:
                detail = {}
            existing = detail.get("existing_photo_id") if isinstance(detail, dict) else None
            if not existing:
                raise ExternalServiceError("Duplicate photo reported without an existing photo id")
            logger.warning(f"Duplicate photo for {subject_id}, existing vector {existing}")
            return Registration(vector_id=str(existing), is_duplicate=True)

        data = self._unwrap(response, "registration")
        if not data.get("photo_id"):
            raise ExternalServiceError("Similarity service returned no photo id")
        logger.info(f"Photo registered as {data['photo_id']}")
        return Registration(vector_id=str(data["photo_id"]))

    def search(self, image_bytes: bytes, min_date: dt.date, max_date: dt.date,
               max_results: int = 20, content_type: str = "image/jpeg") -> List[SimilarityHit]:
        """Nearest photos within the date window, in the order the service ranks them."""
        logger.info(f"Searching similar pets between {min_date.isoformat()} and {max_date.isoformat()}")
        try:
            response = self._session.post(
                self._url("/search_pet/"),
                params={
                    "min_event_date": min_date.isoformat(),
                    "max_event_date": max_date.isoformat(),
                    "n_results": max_results,
                },
                files=[("images", ("search_0.jpg", image_bytes, content_type))],
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ExternalServiceError(f"Similarity service unreachable: {exc}")

        data = self._unwrap(response, "search")
        hits = [
            SimilarityHit(subject_id=str(item["pet_id"]), similarity=normalize_score(item["similarity"]))
            for item in data.get("results") or []
            if item.get("pet_id") is not None and item.get("similarity") is not None
        ]
        logger.info(f"Search returned {len(hits)} candidates")
        return hits

    def delete(self, vector_id: str) -> None:
        try:
            response = self._session.delete(self._url(f"/delete_pet/{vector_id}"), timeout=self._timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(f"Similarity service unreachable: {exc}")
        self._unwrap(response, "delete")
        logger.info(f"Photo {vector_id} removed from index")
