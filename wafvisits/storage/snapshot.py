"""Durable on-disk storage for request source snapshots."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Union

import orjson
import structlog
from pydantic import ValidationError

from wafvisits.errors import DecodeFailure, IoFailure, SiteMismatch, SnapshotNotFound
from wafvisits.storage.models import Snapshot

LOGGER = structlog.get_logger(__name__)

_FILE_MODE = 0o644


def _sync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def new_snapshot(site_id: str, path: Union[Path, str, None] = None) -> Snapshot:
    """Return an empty snapshot bound to ``site_id``."""
    snapshot = Snapshot(site_id=site_id)
    if path is not None:
        snapshot.attach(Path(path))
    return snapshot


def encode_snapshot(snapshot: Snapshot) -> bytes:
    payload = snapshot.model_dump(mode="json", by_alias=True)
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2)


def decode_snapshot(content: Union[bytes, str]) -> Snapshot:
    try:
        payload = orjson.loads(content)
    except orjson.JSONDecodeError as exc:
        raise DecodeFailure(f"snapshot is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise DecodeFailure("snapshot document must be a JSON object")
    try:
        return Snapshot.model_validate(payload)
    except ValidationError as exc:
        raise DecodeFailure(f"snapshot does not match the expected layout: {exc}") from exc


def load_snapshot(path: Union[Path, str], expected_site_id: str = "") -> Snapshot:
    """Read the snapshot at ``path``.

    When ``expected_site_id`` is non-empty the stored site must match it,
    otherwise :class:`SiteMismatch` is raised naming both sites.
    """
    path = Path(path)
    try:
        content = path.read_bytes()
    except FileNotFoundError as exc:
        raise SnapshotNotFound(path) from exc
    except OSError as exc:
        raise IoFailure(f"cannot read {path}: {exc}") from exc

    snapshot = decode_snapshot(content)
    if expected_site_id and snapshot.site_id != expected_site_id:
        raise SiteMismatch(path, expected=expected_site_id, actual=snapshot.site_id)

    snapshot.attach(path)
    LOGGER.debug("snapshot_loaded", path=str(path), sources=len(snapshot.data), site_id=snapshot.site_id)
    return snapshot


def save_snapshot(snapshot: Snapshot) -> Path:
    """Atomically replace the snapshot file with the current state."""
    path = snapshot.path
    if path is None:
        raise IoFailure("snapshot has no file to save to")
    content = encode_snapshot(snapshot)

    try:
        handle, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise IoFailure(f"cannot write {path}: {exc}") from exc

    try:
        with os.fdopen(handle, "wb") as stream:
            stream.write(content)
            stream.flush()
            os.fsync(stream.fileno())
        os.chmod(tmp_name, _FILE_MODE)
        os.replace(tmp_name, path)
        _sync_directory(path.parent)
    except OSError as exc:
        leftover = Path(tmp_name)
        if leftover.exists():
            leftover.unlink()
        raise IoFailure(f"cannot write {path}: {exc}") from exc

    LOGGER.info("snapshot_saved", path=str(path), sources=len(snapshot.data), last_update=snapshot.last_update.isoformat())
    return path
