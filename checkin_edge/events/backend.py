"""
HTTP client for the backend of record.

Check-ins are POSTed with their ``event_id`` as idempotency key. The
backend answers 409 when it already recorded that key; that is a success
from the device's point of view.
"""

from __future__ import annotations

import enum
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Optional

from ..core.errors import DeliveryPermanentError, DeliveryTransientError
from ..models.event import CheckinEventModel, PendingCheckinEvent

# Client errors worth retrying: timeouts, rate limits and auth hiccups while
# a token is being rotated.
_RETRYABLE_4XX = {401, 403, 408, 425, 429}


class SubmitResult(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_sec: float = 5.0,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_sec = float(timeout_sec)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def submit_checkin(self, event: PendingCheckinEvent) -> SubmitResult:
        """
        Deliver one check-in.

        Raises ``DeliveryTransientError`` for network failures, 5xx and the
        retryable 4xx codes, ``DeliveryPermanentError`` for any other 4xx.
        """
        payload = CheckinEventModel.from_pending(event).model_dump_json()
        headers = self._headers()
        headers["Idempotency-Key"] = event.event_id
        req = urllib.request.Request(
            f"{self.base_url}/api/v1/checkins",
            data=payload.encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec):
                return SubmitResult.ACCEPTED
        except urllib.error.HTTPError as exc:
            if exc.code == 409:
                return SubmitResult.DUPLICATE
            detail = _read_error_body(exc)
            if exc.code >= 500 or exc.code in _RETRYABLE_4XX:
                raise DeliveryTransientError(f"HTTP {exc.code}: {detail}") from exc
            raise DeliveryPermanentError(f"HTTP {exc.code}: {detail}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise DeliveryTransientError(f"backend unreachable: {exc}") from exc

    def get_json(self, path: str) -> Optional[Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        req = urllib.request.Request(url, headers=self._headers())
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except Exception as exc:
            self.logger.warning("Backend request failed url=%s: %s", url, exc)
            return None

    def is_reachable(self) -> bool:
        req = urllib.request.Request(f"{self.base_url}/health", headers=self._headers())
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec):
                return True
        except urllib.error.HTTPError as exc:
            # Any HTTP answer means the network path works.
            return exc.code < 500
        except Exception:
            return False


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")[:300]
    except Exception:
        return exc.reason if isinstance(exc.reason, str) else ""


__all__ = ['SubmitResult', 'BackendClient']
