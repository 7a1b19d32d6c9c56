"""Records returned by the Imperva visits API."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List

from pydantic import BaseModel, ConfigDict, Field

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Visit(BaseModel):
    """One visit as reported by the WAF, reduced to the fields we aggregate."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_ips: List[str] = Field(default_factory=list, alias="clientIPs")
    entry_page: str = Field(default="", alias="entryPage")
    start_time: int = Field(alias="startTime")
    security_summary: Dict[str, int] = Field(default_factory=dict, alias="securitySummary")

    @property
    def started_at(self) -> datetime:
        return _EPOCH + timedelta(milliseconds=self.start_time)

    def matches(self, codes: Iterable[str]) -> bool:
        """Return True when any rule code on the visit starts with one of ``codes``."""
        prefixes = tuple(codes)
        if not prefixes:
            return True
        return any(code.startswith(prefixes) for code in self.security_summary)


@dataclass
class VisitBatch:
    """Visits selected from a query window together with the code tally."""

    visits: List[Visit] = field(default_factory=list)
    codes: Counter = field(default_factory=Counter)


def to_epoch_ms(value: datetime) -> int:
    return (value - _EPOCH) // timedelta(milliseconds=1)
