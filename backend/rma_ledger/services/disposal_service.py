# Overview: Regulatory disposal reporting adapter (mock and HTTP implementations).

"""
Disposal / Regulatory Reporting Adapter

WHY: Destroying regulated product has to be reported to the state tracking
system (METRC). That system is remote and fallible; the local destruction
record must never depend on it being up.

CONTRACT:
- report_bulk_waste(records) -> DisposalReport on success
- Any failure (network, timeout, non-2xx, malformed body, a body with
  "success": false) raises ExternalServiceError. Callers decide what a
  failure means; the adapter never retries.
- test_connection() -> dict describing the remote facility/environment

IMPLEMENTATIONS:
- MockDisposalReporter: default, no credentials, deterministic ids
- HttpDisposalReporter: httpx client with a bounded timeout
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from flask import current_app

from ..errors import ExternalServiceError
from ..models.compliance import UNKNOWN
from ..time_utils import to_utc_z, utcnow


DEFAULT_UNIT = "Grams"


@dataclass(frozen=True)
class DisposalRecord:
    """One destroyed package as reported to the regulator."""
    package_uid: str
    quantity: int
    unit: str
    weight_grams: float
    destroyed_at: datetime
    reason: str
    method: str

    def to_payload(self) -> dict:
        return {
            "packageUid": self.package_uid,
            "quantity": self.quantity,
            "unit": self.unit,
            "weight": self.weight_grams,
            "destructionDate": to_utc_z(self.destroyed_at),
            "wasteReason": self.reason,
            "destructionMethod": self.method,
        }


@dataclass(frozen=True)
class DisposalReport:
    success: bool
    adjustment_ids: tuple = ()
    reported_at: datetime | None = None
    message: str = ""


def has_tracking_id(line) -> bool:
    return bool(line.state_tracking_id) and line.state_tracking_id != UNKNOWN


def build_disposal_records(return_request, *, destroyed_at: datetime, method: str) -> list[DisposalRecord]:
    """Records for every line carrying a state tracking id; other lines are not reported."""
    reason = f"RMA {return_request.rma_number}: {return_request.return_reason} - {return_request.detailed_reason}"
    records = []
    for line in return_request.lines:
        if not has_tracking_id(line):
            continue
        unit = line.unit if line.unit and line.unit != UNKNOWN else DEFAULT_UNIT
        records.append(
            DisposalRecord(
                package_uid=line.state_tracking_id,
                quantity=line.quantity,
                unit=unit,
                weight_grams=round((line.weight_grams or 0.0) * line.quantity, 4),
                destroyed_at=destroyed_at,
                reason=reason,
                method=method,
            )
        )
    return records


# =============================================================================
# REPORTERS
# =============================================================================

class DisposalReporter:
    """Interface for regulator reporting backends."""

    name = "base"

    def report_bulk_waste(self, records: list[DisposalRecord]) -> DisposalReport:
        raise NotImplementedError

    def test_connection(self) -> dict:
        raise NotImplementedError


class MockDisposalReporter(DisposalReporter):
    """Development reporter: accepts everything and remembers what it was sent."""

    name = "mock"

    def __init__(self):
        self.batches: list[list[DisposalRecord]] = []

    def report_bulk_waste(self, records: list[DisposalRecord]) -> DisposalReport:
        self.batches.append(list(records))
        now = utcnow()
        stamp = int(now.timestamp() * 1000)
        return DisposalReport(
            success=True,
            adjustment_ids=tuple(f"MOCK-ADJ-{stamp}-{i}" for i in range(len(records))),
            reported_at=now,
            message=f"Mock: {len(records)} waste items reported successfully",
        )

    def test_connection(self) -> dict:
        return {
            "success": True,
            "environment": "MOCK (Development)",
            "message": "Mock connection successful",
            "timestamp": to_utc_z(utcnow()),
        }


class HttpDisposalReporter(DisposalReporter):
    """HTTP client for a METRC-style waste reporting endpoint."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ExternalServiceError("Disposal reporting URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._headers(),
            transport=self.transport,
        )

    @staticmethod
    def _handle_response(resp: httpx.Response) -> dict[str, Any]:
        if resp.status_code >= 400:
            raise ExternalServiceError(
                f"Disposal reporting failed: HTTP {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            data: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise ExternalServiceError(
                f"Disposal reporting returned a non-JSON response: {resp.text[:200] if resp.text else '(empty)'}",
                status_code=resp.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise ExternalServiceError(
                f"Disposal reporting returned an unexpected body: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return data

    def report_bulk_waste(self, records: list[DisposalRecord]) -> DisposalReport:
        payload = {"items": [record.to_payload() for record in records]}
        try:
            with self._client() as client:
                resp = client.post("/waste/bulk", json=payload)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Disposal reporting unreachable: {exc}") from exc

        data = self._handle_response(resp)
        if data.get("success") is False:
            raise ExternalServiceError(
                f"Disposal reporting rejected the batch: {data.get('message') or data.get('error') or 'no reason given'}",
                status_code=resp.status_code,
            )
        return DisposalReport(
            success=True,
            adjustment_ids=tuple(str(i) for i in (data.get("adjustmentIds") or ())),
            reported_at=utcnow(),
            message=data.get("message", f"{len(records)} waste items reported"),
        )

    def test_connection(self) -> dict:
        try:
            with self._client() as client:
                resp = client.get("/facilities")
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Disposal reporting unreachable: {exc}") from exc

        data = self._handle_response(resp)
        return {
            "success": True,
            "environment": self.base_url,
            "facilities": data.get("facilities", []),
            "timestamp": to_utc_z(utcnow()),
        }


def get_disposal_reporter() -> DisposalReporter:
    """
    Reporter for the current app.

    An instance placed in app.extensions["disposal_reporter"] wins (tests,
    embedding apps); otherwise DISPOSAL_REPORTER selects one from config.
    """
    injected = current_app.extensions.get("disposal_reporter")
    if injected is not None:
        return injected

    kind = (current_app.config.get("DISPOSAL_REPORTER") or "mock").lower()
    if kind == "mock":
        return MockDisposalReporter()
    if kind == "http":
        return HttpDisposalReporter(
            current_app.config.get("DISPOSAL_REPORTING_URL", ""),
            current_app.config.get("DISPOSAL_REPORTING_API_KEY", ""),
            timeout=current_app.config.get("DISPOSAL_REPORTING_TIMEOUT_SECONDS", 10.0),
        )
    raise ExternalServiceError(f"Unknown disposal reporter: {kind}")
