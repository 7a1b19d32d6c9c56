"""WHOIS ownership lookups against ARIN's RESTful WHOIS service."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog

from wafvisits.errors import WhoIsFailure
from wafvisits.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)


def parse_whois_text(text: str) -> Dict[str, str]:
    """Flatten ARIN full-text WHOIS output into ``{field: value}``.

    Records are separated by blank lines. A field repeated within a record
    (multi-line addresses) is joined with ``", "``; a field seen again in a
    later record replaces the earlier value, since ARIN lists the most
    specific allocation last.
    """
    info: Dict[str, str] = {}
    record: Dict[str, List[str]] = {}

    def _flush() -> None:
        for key, values in record.items():
            info[key] = ", ".join(values)
        record.clear()

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            _flush()
            continue
        if line.startswith("#") or ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip()
        if not key or " " in key:
            continue
        value = value.strip()
        if value:
            record.setdefault(key, []).append(value)
    _flush()
    return info


class WhoisClient:
    """Resolves an IP address to the registry's ownership fields."""

    def __init__(
        self,
        *,
        base_url: str = "https://whois.arin.net/rest/ip",
        timeout: float = 15.0,
        metrics: Optional[MetricsRegistry] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._metrics = metrics or MetricsRegistry()
        self._client = httpx.Client(headers={"Accept": "text/plain"}, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], *, metrics: Optional[MetricsRegistry] = None) -> "WhoisClient":
        return cls(base_url=settings["base_url"], timeout=float(settings["timeout_seconds"]), metrics=metrics)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WhoisClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def lookup(self, ip: str) -> Dict[str, str]:
        """Return the WHOIS fields for ``ip``; an empty mapping when ARIN has none."""
        self._metrics.incr("whois_lookups")
        url = f"{self._base_url}/{ip}/pft.txt"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise WhoIsFailure(ip, str(exc)) from exc

        if response.status_code == httpx.codes.NOT_FOUND:
            LOGGER.info("whois_no_data", ip=ip)
            return {}
        if response.is_error:
            raise WhoIsFailure(ip, f"HTTP {response.status_code}")

        info = parse_whois_text(response.text)
        LOGGER.debug("whois_lookup", ip=ip, fields=len(info))
        return info
