"""Paginated client for the Imperva visits API."""
from __future__ import annotations

import os
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
import structlog
from pydantic import ValidationError

from wafvisits.errors import MissingCredentials, UpstreamFailure
from wafvisits.imperva.models import Visit, VisitBatch, to_epoch_ms
from wafvisits.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

API_KEY_ENV = "IMPERVA_API_KEY"
API_ID_ENV = "IMPERVA_API_ID"


class ImpervaClient:
    """Fetches visits for a site, one page at a time."""

    def __init__(
        self,
        *,
        api_id: str,
        api_key: str,
        base_url: str = "https://my.imperva.com",
        visits_path: str = "/api/visits/v1",
        page_size: int = 100,
        timeout: float = 30.0,
        max_attempts: int = 4,
        retry_delay: float = 1.0,
        metrics: Optional[MetricsRegistry] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._visits_path = visits_path
        self._page_size = page_size
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._metrics = metrics or MetricsRegistry()
        self._client = httpx.Client(
            base_url=base_url,
            headers={"x-API-Id": api_id, "x-API-Key": api_key, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        *,
        metrics: Optional[MetricsRegistry] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ImpervaClient":
        """Build a client from the ``[imperva]`` settings and the environment."""
        environ = os.environ if environ is None else environ
        api_key = environ.get(API_KEY_ENV, "")
        api_id = environ.get(API_ID_ENV, "")
        if not api_key or not api_id:
            raise MissingCredentials()
        return cls(
            api_id=api_id,
            api_key=api_key,
            base_url=settings["base_url"],
            visits_path=settings["visits_path"],
            page_size=int(settings["page_size"]),
            timeout=float(settings["timeout_seconds"]),
            max_attempts=int(settings["max_attempts"]),
            retry_delay=float(settings["retry_delay_seconds"]),
            metrics=metrics,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ImpervaClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _post(self, form: Dict[str, str]) -> httpx.Response:
        delay = self._retry_delay
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._client.post(self._visits_path, data=form)
            except httpx.TransportError as exc:
                if attempt >= self._max_attempts:
                    raise UpstreamFailure(f"visits request failed after {attempt} attempts: {exc}") from exc
                self._metrics.incr("fetch_retries")
                LOGGER.warning("visits_retry", attempt=attempt, page=form["page_num"], reason=str(exc))
                time.sleep(delay)
                delay *= 2

    def _fetch_page(self, site_id: str, start: datetime, end: datetime, page_num: int) -> List[Visit]:
        form = {
            "site_id": site_id,
            "time_range": "custom",
            "start": str(to_epoch_ms(start)),
            "end": str(to_epoch_ms(end)),
            "page_size": str(self._page_size),
            "page_num": str(page_num),
        }
        response = self._post(form)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamFailure(f"visits request returned HTTP {response.status_code}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFailure("visits response is not JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamFailure("visits response is not a JSON object")
        if str(payload.get("res", 0)) != "0":
            raise UpstreamFailure(f"visits request rejected: {payload.get('res_message') or payload.get('res')}")

        try:
            return [Visit.model_validate(raw) for raw in payload.get("visits") or []]
        except ValidationError as exc:
            raise UpstreamFailure(f"unexpected visit record: {exc}") from exc

    def get_visits(
        self,
        site_id: str,
        start: datetime,
        end: datetime,
        max_pages: int,
        codes: Sequence[str] = (),
    ) -> VisitBatch:
        """Collect visits in ``[start, end]`` carrying any of ``codes``.

        Every visit read contributes to the code tally, whether or not it
        passes the code filter. An empty ``codes`` keeps every visit.
        """
        batch = VisitBatch()
        for page_num in range(max_pages):
            visits = self._fetch_page(site_id, start, end, page_num)
            self._metrics.incr("visit_pages_fetched")
            self._metrics.incr("visits_fetched", len(visits))
            LOGGER.debug("visits_page", site_id=site_id, page=page_num, visits=len(visits))
            for visit in visits:
                for code, count in visit.security_summary.items():
                    batch.codes[code] += count
                if visit.matches(codes):
                    batch.visits.append(visit)
            if len(visits) < self._page_size:
                break
        else:
            LOGGER.warning("visits_page_cap", site_id=site_id, max_pages=max_pages)
        return batch
