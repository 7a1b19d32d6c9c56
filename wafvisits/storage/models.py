"""Pydantic models for the per-site request source snapshot."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` in UTC, treating naive datetimes as already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntryPage(_CamelModel):
    """Access window for one landing URL hit by a request source."""

    url: str
    first_access: datetime
    last_access: datetime

    @field_validator("first_access", "last_access")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "EntryPage":
        if self.first_access > self.last_access:
            raise ValueError(f"firstAccess after lastAccess for {self.url!r}")
        return self

    def widen(self, when: datetime) -> None:
        """Stretch the access window so that it covers ``when``."""
        if when < self.first_access:
            self.first_access = when
        if when > self.last_access:
            self.last_access = when


class RequestSource(_CamelModel):
    """Everything known about one client IP."""

    ip: str
    info: Dict[str, str] = Field(default_factory=dict)
    pages: List[EntryPage] = Field(default_factory=list)
    hits: int = Field(default=0, ge=0)

    @field_validator("info", "pages", mode="before")
    @classmethod
    def _null_as_empty(cls, value, validation: ValidationInfo):
        if value is None:
            return {} if validation.field_name == "info" else []
        return value

    @model_validator(mode="after")
    def _consistent(self) -> "RequestSource":
        urls = [page.url for page in self.pages]
        if len(set(urls)) != len(urls):
            raise ValueError(f"duplicate page url for {self.ip}")
        if self.hits < len(self.pages):
            raise ValueError(f"{self.ip} has fewer hits than pages")
        return self

    def page_for(self, url: str) -> Optional[EntryPage]:
        for page in self.pages:
            if page.url == url:
                return page
        return None


class Snapshot(_CamelModel):
    """Aggregated request sources for a single site.

    ``path`` is where the snapshot is persisted; it is attached by the
    store and never written into the document itself.
    """

    data: Dict[str, RequestSource] = Field(default_factory=dict)
    last_update: datetime = ZERO_TIME
    site_id: str = ""

    _path: Optional[Path] = PrivateAttr(default=None)

    @field_validator("data", mode="before")
    @classmethod
    def _null_data(cls, value):
        return {} if value is None else value

    @field_validator("last_update")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _keys_match(self) -> "Snapshot":
        for ip, source in self.data.items():
            if source.ip != ip:
                raise ValueError(f"entry keyed {ip} carries ip {source.ip}")
        return self

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def attach(self, path: Optional[Path]) -> None:
        """Bind the snapshot to the file it is loaded from or saved to."""
        self._path = path

    @property
    def never_updated(self) -> bool:
        return self.last_update == ZERO_TIME
