"""
Notification dispatcher
-----------------------
Best-effort push delivery to a user's registered device. Nothing in here
raises: every failure is reported through ``NotificationResult`` so callers
looping over candidates are never interrupted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from petradar.services.push import is_expo_push_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    delivered: bool
    reason: Optional[str] = None


class NotificationDispatcher:

    def __init__(self, store, gateway) -> None:
        self._store = store
        self._gateway = gateway

    def notify_match(self, owner_id: str, match_id: str, score: float,
                     pet_name: Optional[str]) -> NotificationResult:
        """Tell a lost-pet owner that a sighting looks like their pet."""
        name = pet_name or "your pet"
        return self._deliver(
            owner_id,
            "🐾 Possible match found!",
            f"Someone reported seeing {name}. Similarity: {round(score * 100)}%",
            {
                "type": "new_match",
                "match_id": str(match_id),
                "score": str(score),
                "pet_name": pet_name or "",
                "screen": "Matches",
            },
        )

    def notify_match_confirmed(self, reporter_id: str, pet_name: Optional[str],
                               owner_phone: Optional[str] = None) -> NotificationResult:
        """Tell the sighting reporter that the owner confirmed the match."""
        body = f"The owner of {pet_name or 'the pet'} confirmed the match."
        if owner_phone:
            body += f" Contact: {owner_phone}"
        return self._deliver(
            reporter_id,
            "✅ The owner confirmed it is their pet!",
            body,
            {
                "type": "match_confirmed",
                "pet_name": pet_name or "",
                "owner_phone": owner_phone or "",
                "screen": "Matches",
            },
        )

    def send_test(self, user_id: str) -> NotificationResult:
        user = self._safe_user(user_id)
        name = (user.full_name if user else None) or "there"
        return self._deliver(user_id, "🧪 Test notification",
                             f"Hi {name}! Notifications are working 🎉", {"type": "test"})

    def _safe_user(self, user_id: str):
        try:
            return self._store.get_user(user_id)
        except Exception as exc:
            logger.error(f"Could not load user {user_id}: {exc}")
            return None

    def _deliver(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> NotificationResult:
        try:
            user = self._store.get_user(user_id)
            if user is None or not user.push_token:
                logger.warning(f"User {user_id} has no push token")
                return NotificationResult(delivered=False, reason="No push token")

            if not is_expo_push_token(user.push_token):
                logger.warning(f"User {user_id} has a malformed push token")
                return NotificationResult(delivered=False, reason="Invalid push token")

            result = self._gateway.send(user.push_token, title, body, data)
            if result.delivered:
                logger.info(f"Notification '{data.get('type')}' sent to {user_id}")
                return NotificationResult(delivered=True)

            if result.permanent_failure:
                self._drop_token(user_id)
            return NotificationResult(delivered=False, reason=result.reason)

        except Exception as exc:
            logger.error(f"Notification to {user_id} failed: {exc}")
            return NotificationResult(delivered=False, reason=str(exc))

    def _drop_token(self, user_id: str) -> None:
        try:
            self._store.clear_push_token(user_id)
            logger.info(f"Expired push token removed for {user_id}")
        except Exception as exc:
            logger.error(f"Could not clear push token for {user_id}: {exc}")
