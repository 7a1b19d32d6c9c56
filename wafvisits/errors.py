"""Error kinds raised by the visit aggregation tool."""
from __future__ import annotations

from pathlib import Path


class WafVisitsError(Exception):
    """Base class for every error surfaced to the command line."""


class InvalidDate(WafVisitsError):
    """A date argument is not in ``YYYY-MM-DD`` form."""

    def __init__(self, label: str, value: str) -> None:
        super().__init__(f"{label} date '{value}' is not valid")
        self.value = value


class NoCodesSpecified(WafVisitsError):
    def __init__(self) -> None:
        super().__init__("Specify at least one --code argument. Use the codes command to list possible codes.")


class MissingCredentials(WafVisitsError):
    def __init__(self) -> None:
        super().__init__("You must provide IMPERVA_API_KEY and IMPERVA_API_ID environment variables.")


class SnapshotNotFound(WafVisitsError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"File does not exist: {path}")
        self.path = path


class SiteMismatch(WafVisitsError):
    """The snapshot on disk is bound to a different site."""

    def __init__(self, path: Path, *, expected: str, actual: str) -> None:
        super().__init__(f"the database at {path} is for site {actual}, not {expected}")
        self.path = path
        self.expected = expected
        self.actual = actual


class DecodeFailure(WafVisitsError):
    pass


class IoFailure(WafVisitsError):
    pass


class UpstreamFailure(WafVisitsError):
    """The visit source could not deliver visits for the requested window."""


class WhoIsFailure(WafVisitsError):
    def __init__(self, ip: str, reason: str) -> None:
        super().__init__(f"whois lookup for {ip} failed: {reason}")
        self.ip = ip
