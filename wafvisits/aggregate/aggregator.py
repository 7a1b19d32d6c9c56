"""Folds visits into a snapshot, enriching each new IP exactly once."""
from __future__ import annotations

from typing import Iterable, Mapping, Optional, Protocol

import structlog

from wafvisits.imperva.models import Visit
from wafvisits.observability.metrics import MetricsRegistry
from wafvisits.storage.models import EntryPage, RequestSource, Snapshot

LOGGER = structlog.get_logger(__name__)


class WhoisResolver(Protocol):
    def lookup(self, ip: str) -> Mapping[str, str]:
        ...


class SnapshotAggregator:
    """Applies visits to the request sources held by ``snapshot``."""

    def __init__(self, snapshot: Snapshot, whois: WhoisResolver, *, metrics: Optional[MetricsRegistry] = None) -> None:
        self._snapshot = snapshot
        self._whois = whois
        self._metrics = metrics or MetricsRegistry()

    def _source_for(self, ip: str) -> RequestSource:
        source = self._snapshot.data.get(ip)
        if source is not None:
            return source
        # The IP is entered only after a successful lookup.
        info = dict(self._whois.lookup(ip) or {})
        source = RequestSource(ip=ip, info=info)
        self._snapshot.data[ip] = source
        self._metrics.incr("sources_new")
        LOGGER.debug("source_added", ip=ip, info_fields=len(info))
        return source

    def add_visit(self, visit: Visit) -> None:
        """Count ``visit`` once against every IP it lists, in order.

        A repeated IP is counted once per occurrence. The entry page keeps
        the widest ``[firstAccess, lastAccess]`` seen for that IP.
        """
        when = visit.started_at
        for ip in visit.client_ips:
            source = self._source_for(ip)
            source.hits += 1
            self._metrics.incr("ip_hits")

            page = source.page_for(visit.entry_page)
            if page is None:
                source.pages.append(EntryPage(url=visit.entry_page, first_access=when, last_access=when))
            else:
                page.widen(when)
        self._metrics.incr("visits_folded")

    def add_visits(self, visits: Iterable[Visit]) -> int:
        count = 0
        for visit in visits:
            self.add_visit(visit)
            count += 1
        return count
