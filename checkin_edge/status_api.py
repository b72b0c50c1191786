"""
Local HTTP surface for the kiosk UI.

Exposes the observability snapshot (queue depth, last sync, tracker
guidance) and accepts scans from a browser-based QR reader.

Run through ``checkin_edge.main`` which wires the providers; the app is
served with uvicorn on ``sync.status_api_port``.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

from .core.errors import OutboxWriteError, log_exception
from .models.event import StatusModel
from .runtime.scanner import ScannerChannel

logger = logging.getLogger("status_api")


class ScanRequest(BaseModel):
    content: str


class ScanResponse(BaseModel):
    kind: str
    code: str
    identity_id: Optional[str] = None
    accepted: bool = False
    status: Optional[str] = None
    reason: Optional[str] = None
    event_id: Optional[str] = None


def create_app(
    status_provider: Callable[[], StatusModel],
    *,
    scanner: Optional[ScannerChannel] = None,
    token: Optional[str] = None,
) -> FastAPI:
    app = FastAPI(title="Check-in Edge Status API", version="1.0")

    def _verify_auth(authorization: str | None) -> None:
        if not token:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing authorization token.")
        incoming = authorization.split(" ", 1)[1].strip()
        if incoming != token:
            raise HTTPException(status_code=403, detail="Invalid authorization token.")

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/v1/status", response_model=StatusModel)
    def status(authorization: str | None = Header(default=None)) -> StatusModel:
        _verify_auth(authorization)
        return status_provider()

    @app.post("/api/v1/scans", response_model=ScanResponse)
    def submit_scan(body: ScanRequest, authorization: str | None = Header(default=None)) -> ScanResponse:
        _verify_auth(authorization)
        if scanner is None:
            raise HTTPException(status_code=404, detail="Scanner channel is disabled.")
        try:
            outcome = scanner.handle_scan(body.content)
        except OutboxWriteError as exc:
            log_exception(logger, "Scan check-in could not be stored", exc)
            raise HTTPException(status_code=503, detail="Check-in could not be stored.")
        decision = outcome.decision
        return ScanResponse(
            kind=outcome.result.kind.value,
            code=outcome.result.code,
            identity_id=outcome.identity_id,
            accepted=bool(decision and decision.accepted),
            status=decision.status.value if decision and decision.status else None,
            reason=decision.reason.value if decision and decision.reason else None,
            event_id=decision.event.event_id if decision and decision.event else None,
        )

    return app


__all__ = ['create_app', 'ScanRequest', 'ScanResponse']
