"""
Document Regeneration Gateway.

All outbound calls to the content-regeneration collaborator go through
this class.  Direct `requests` calls in services or blueprints are
FORBIDDEN.

The collaborator owns *how* a derived document is regenerated; this
service only tells it *which* document and *which* root fields triggered
the request:

    POST {REGENERATION_URL}/documents/<derived_document_id>/regenerate
    {"triggering_fields": ["objectives", "businessInfo"]}

A 2xx response means the request was accepted; the collaborator later
signals completion through POST /api/v1/derived/<id>/complete.

Behaviour:
  - Timeout: REGENERATION_TIMEOUT_SECONDS per attempt
  - Retry: up to _RETRY_MAX extra attempts with backoff on 5xx / network
    errors; 4xx is final
  - Never raises: every outcome is a GatewayResult, callers check .ok
  - No base_url configured → log-only mode, reports success (dev / test)

Testability: pass a mock `session` to RegenerationGateway() in tests instead
of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time

import requests

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 1
_RETRY_BACKOFF_SECONDS = [0.5]

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 10.0


class GatewayResult:
    """Structured return value from RegenerationGateway calls.

    Attributes:
        ok:             True if the collaborator accepted the request.
        status_code:    HTTP status code (None if network-level failure).
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        timed_out:      True if the last attempt hit the timeout.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        error: str | None,
        duration_ms: int,
        timed_out: bool = False,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms
        self.timed_out = timed_out

    def __repr__(self) -> str:
        return f"<GatewayResult ok={self.ok} status={self.status_code} error={self.error!r}>"


class RegenerationGateway:
    """Client for the document regeneration collaborator.

    Usage:
        gateway = RegenerationGateway.from_config(current_app.config)
        result = gateway.regenerate(doc_id, ["objectives"])
        if not result.ok:
            ...
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        retry_backoff: list[float] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout
        self._session: requests.Session | None = session
        self._retry_backoff = _RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff

    @classmethod
    def from_config(cls, config) -> "RegenerationGateway":
        return cls(
            config.get("REGENERATION_URL"),
            api_key=config.get("REGENERATION_API_KEY"),
            timeout=float(config.get("REGENERATION_TIMEOUT_SECONDS") or _DEFAULT_TIMEOUT),
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def log_only(self) -> bool:
        return self.base_url is None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # ── Public API ────────────────────────────────────────────────────────────

    def regenerate(self, derived_document_id: str, triggering_fields: list[str]) -> GatewayResult:
        """Ask the collaborator to regenerate one derived document.

        Args:
            derived_document_id: Document to regenerate.
            triggering_fields:   Inherited root fields whose change triggered it.

        Returns:
            GatewayResult — always returns (never raises).
        """
        fields = sorted(triggering_fields)
        if self.log_only:
            logger.info(
                "[LOG-ONLY] Regeneration requested fields=%s", ",".join(fields),
                extra={"derived_document_id": derived_document_id},
            )
            return GatewayResult(ok=True, status_code=None, error=None, duration_ms=0)

        url = f"{self.base_url}/documents/{derived_document_id}/regenerate"
        last_error = "Unknown error"
        last_status: int | None = None
        timed_out = False
        t_start = time.perf_counter()

        for attempt in range(_RETRY_MAX + 1):
            try:
                resp = self.session.request(
                    "POST",
                    url,
                    json={"triggering_fields": fields},
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                last_status = resp.status_code
                timed_out = False
                if resp.ok:
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        error=None,
                        duration_ms=int((time.perf_counter() - t_start) * 1000),
                    )
                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                logger.warning(
                    "Regeneration request failed attempt=%d/%d status=%d",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code,
                    extra={"derived_document_id": derived_document_id},
                )
                if resp.status_code < 500:
                    break

            except requests.Timeout:
                timed_out = True
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "Regeneration request timed out attempt=%d/%d",
                    attempt + 1, _RETRY_MAX + 1,
                    extra={"derived_document_id": derived_document_id},
                )

            except requests.RequestException as exc:
                timed_out = False
                last_error = str(exc)[:500]
                logger.warning(
                    "Regeneration network error attempt=%d/%d error=%s",
                    attempt + 1, _RETRY_MAX + 1, last_error,
                    extra={"derived_document_id": derived_document_id},
                )

            if attempt < _RETRY_MAX and self._retry_backoff:
                time.sleep(self._retry_backoff[min(attempt, len(self._retry_backoff) - 1)])

        return GatewayResult(
            ok=False,
            status_code=last_status,
            error=last_error,
            duration_ms=int((time.perf_counter() - t_start) * 1000),
            timed_out=timed_out,
        )
