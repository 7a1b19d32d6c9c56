"""Incremental update of a snapshot, one whole UTC day at a time."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

import structlog

from wafvisits.aggregate.aggregator import SnapshotAggregator, WhoisResolver
from wafvisits.errors import NoCodesSpecified, SnapshotNotFound
from wafvisits.imperva.models import VisitBatch
from wafvisits.observability.metrics import MetricsRegistry, record_duration
from wafvisits.storage.models import Snapshot
from wafvisits.storage.snapshot import load_snapshot, new_snapshot, save_snapshot

LOGGER = structlog.get_logger(__name__)

DEFAULT_UPDATE_MAX_PAGES = 1000
DEFAULT_INITIAL_DAYS = 30


class VisitSource(Protocol):
    def get_visits(
        self,
        site_id: str,
        start: datetime,
        end: datetime,
        max_pages: int,
        codes: Sequence[str] = (),
    ) -> VisitBatch:
        ...


def require_codes(codes: Optional[Sequence[str]]) -> list[str]:
    selected = [code for code in (codes or []) if code]
    if not selected:
        raise NoCodesSpecified()
    return selected


def page_limit(max_pages: Optional[int], default: int) -> int:
    if max_pages is None or max_pages < 1:
        return default
    return max_pages


def start_of_day(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def last_complete_second(now: datetime) -> datetime:
    """Return the final second of the UTC day before the one containing ``now``."""
    return start_of_day(now) - timedelta(seconds=1)


@dataclass
class UpdatePlan:
    """The snapshot to fold into and the window to fetch.

    ``start`` and ``end`` are None when the snapshot already covers every
    complete day.
    """

    snapshot: Snapshot
    created: bool
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def up_to_date(self) -> bool:
        return self.end is None


def plan_update(
    db_path: Union[Path, str],
    site_id: str,
    *,
    now: Optional[datetime] = None,
    initial_days: int = DEFAULT_INITIAL_DAYS,
) -> UpdatePlan:
    """Load or create the snapshot at ``db_path`` and work out the next window.

    A new snapshot starts ``initial_days`` before the end of yesterday,
    rounded down to midnight, as does a stored one that was never updated.
    Otherwise the window resumes one second after the watermark.
    """
    db_path = Path(db_path)
    now = now or datetime.now(timezone.utc)
    end = last_complete_second(now)

    try:
        snapshot = load_snapshot(db_path, site_id)
    except SnapshotNotFound:
        snapshot = new_snapshot(site_id, db_path)
        start = start_of_day(end - timedelta(days=initial_days))
        LOGGER.info("snapshot_create", path=str(db_path), site_id=site_id)
        return UpdatePlan(snapshot=snapshot, created=True, start=start, end=end)

    if end <= snapshot.last_update:
        LOGGER.info("snapshot_up_to_date", path=str(db_path), last_update=snapshot.last_update.isoformat())
        return UpdatePlan(snapshot=snapshot, created=False)

    if snapshot.never_updated:
        start = start_of_day(end - timedelta(days=initial_days))
    else:
        start = snapshot.last_update + timedelta(seconds=1)
    return UpdatePlan(snapshot=snapshot, created=False, start=start, end=end)


def apply_update(
    plan: UpdatePlan,
    *,
    codes: Sequence[str],
    visit_source: VisitSource,
    whois: WhoisResolver,
    max_pages: Optional[int] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> int:
    """Fetch the planned window, fold it in, advance the watermark and save.

    Any failure propagates before the save, leaving the file on disk as it
    was. Returns the number of visits folded.
    """
    if plan.up_to_date:
        return 0
    codes = require_codes(codes)
    metrics = metrics or MetricsRegistry()
    snapshot = plan.snapshot
    max_pages = page_limit(max_pages, DEFAULT_UPDATE_MAX_PAGES)

    LOGGER.info(
        "update_window",
        site_id=snapshot.site_id,
        start=plan.start.isoformat(),
        end=plan.end.isoformat(),
        codes=list(codes),
        max_pages=max_pages,
    )
    with record_duration(metrics, "run_duration_ms"):
        batch = visit_source.get_visits(snapshot.site_id, plan.start, plan.end, max_pages, codes)
        aggregator = SnapshotAggregator(snapshot, whois, metrics=metrics)
        folded = aggregator.add_visits(batch.visits)
        snapshot.last_update = plan.end
        save_snapshot(snapshot)

    LOGGER.info("update_complete", site_id=snapshot.site_id, visits=folded, **metrics.snapshot())
    return folded
