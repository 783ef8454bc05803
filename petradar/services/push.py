"""Expo push gateway."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from petradar.common.errors import ExternalServiceError
from petradar.config import DEFAULT_EXPO_PUSH_URL

logger = logging.getLogger(__name__)

EXPO_TOKEN_PATTERN = re.compile(r"^Expo(nent)?PushToken\[[^\]]+\]$")
PERMANENT_ERRORS = {"DeviceNotRegistered"}


def is_expo_push_token(token: Optional[str]) -> bool:
    return bool(token) and bool(EXPO_TOKEN_PATTERN.match(token))


@dataclass(frozen=True)
class PushResult:
    delivered: bool
    permanent_failure: bool = False
    reason: Optional[str] = None


class ExpoPushGateway:
    """Sends one message per call through the Expo push API"""

    def __init__(self, url: str = DEFAULT_EXPO_PUSH_URL, access_token: Optional[str] = None,
                 timeout: float = 10, session: Optional[requests.Session] = None) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if access_token:
            self._headers["Authorization"] = f"Bearer {access_token}"

    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> PushResult:
        message = {
            "to": token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
            "badge": 1,
            "priority": "high",
        }
        try:
            response = self._session.post(self._url, json=[message], headers=self._headers,
                                          timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError(f"Push gateway failed: {exc}")

        tickets = payload.get("data") or []
        ticket = tickets[0] if isinstance(tickets, list) and tickets else tickets
        if not isinstance(ticket, dict):
            return PushResult(delivered=False, reason="Empty push ticket")

        if ticket.get("status") == "error":
            error_code = (ticket.get("details") or {}).get("error")
            logger.error(f"Push ticket error: {ticket.get('message')} ({error_code})")
            return PushResult(delivered=False,
                              permanent_failure=error_code in PERMANENT_ERRORS,
                              reason=ticket.get("message") or error_code)

        return PushResult(delivered=True)
