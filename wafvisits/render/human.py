"""Human-readable rendering of a snapshot."""
from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import Optional, TextIO

from wafvisits.storage.models import EntryPage, RequestSource, Snapshot

WHOIS_FIELDS = (
    "OrgName",
    "OrgTechName",
    "OrgTechPhone",
    "OrgTechEmail",
    "Address",
    "City",
    "StateProv",
    "PostalCode",
    "Country",
)


def format_date(value: datetime) -> str:
    """Dates are always reported in UTC."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _page_summary(page: EntryPage, hits: int) -> str:
    from_date = format_date(page.first_access)
    to_date = format_date(page.last_access)
    if from_date != to_date:
        return f"{page.url} - {hits} hits {from_date} to {to_date}"
    return f"{page.url} - {hits} hits {from_date}"


def _write_source(out: TextIO, source: RequestSource) -> None:
    if len(source.pages) == 1:
        out.write(f"{source.ip}: {_page_summary(source.pages[0], source.hits)}\n")
    else:
        out.write(f"{source.ip}:\n")
        out.write("  Pages:\n")
        for page in source.pages:
            out.write(f"  {_page_summary(page, source.hits)}\n")

    for field in WHOIS_FIELDS:
        if field in source.info:
            out.write(f"  {field}: {source.info[field]}\n")
    out.write("\n")


def print_snapshot(snapshot: Snapshot, out: Optional[TextIO] = None) -> None:
    """Write every request source, in first-seen order.

    The hit count on each page line is the total for the IP, not for the
    page.
    """
    out = out or sys.stdout
    if snapshot.site_id:
        out.write(f"Site: {snapshot.site_id}\n\n")
    for source in snapshot.data.values():
        _write_source(out, source)
