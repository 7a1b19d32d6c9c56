"""CSV export of a snapshot, one row per IP and entry page."""
from __future__ import annotations

import sys
from typing import Iterator, List, Optional, TextIO

from wafvisits.render.human import WHOIS_FIELDS, format_date
from wafvisits.storage.models import Snapshot

HEADING = (
    "site,ip,url,hits,from,to,org-name,org-tech-name,org-tech-phone,"
    "org-tech-email,address,city,state,postal-code,country"
)


def escape_cell(text: str) -> str:
    """Quote cells containing a double quote or comma; nothing else is escaped."""
    if '"' in text or "," in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def iter_rows(snapshot: Snapshot) -> Iterator[List[str]]:
    for source in snapshot.data.values():
        for page in source.pages:
            yield [
                snapshot.site_id,
                source.ip,
                page.url,
                str(source.hits),
                format_date(page.first_access),
                format_date(page.last_access),
                *(source.info.get(field, "") for field in WHOIS_FIELDS),
            ]


def dump_csv(snapshot: Snapshot, out: Optional[TextIO] = None, *, heading: bool = True) -> None:
    out = out or sys.stdout
    if heading:
        out.write(HEADING + "\n")
    for row in iter_rows(snapshot):
        out.write(",".join(escape_cell(cell) for cell in row) + "\n")
