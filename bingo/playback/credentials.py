"""File-backed persistence for the locked device and playback credentials.

Both files are small JSON documents written atomically via
temp-file-then-rename with owner-only permissions. Contents are opaque to
the session engine: the device id is only handed to the playback
controller, and tokens never leave the controller.
"""

import contextlib
import json
import os
import tempfile
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger()

_FILE_MODE = 0o600
_DIR_MODE = 0o700


class LockedDevice(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""


class StoredTokens(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=f".{path.name}_")
    fd_owned = True
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd_owned = False
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, _FILE_MODE)  # noqa: PTH101
        Path(tmp_path).replace(path)
    except BaseException:
        if fd_owned:
            with contextlib.suppress(OSError):
                os.close(fd)
        with contextlib.suppress(OSError):
            Path(tmp_path).unlink()
        raise


def _read_json(path: Path) -> dict | None:
    """Return the decoded object, or None when the file is missing or unreadable."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("ignoring unreadable credentials file", path=str(path), error=str(exc))
        return None
    return data if isinstance(data, dict) else None


class DeviceStore:
    """Persisted `{id, name}` of the device the host locked playback to."""

    def __init__(self, file_path: str | Path) -> None:
        self._path = Path(file_path)

    def load(self) -> LockedDevice | None:
        data = _read_json(self._path)
        if data is None:
            return None
        try:
            return LockedDevice.model_validate(data)
        except ValidationError:
            logger.warning("ignoring malformed device file", path=str(self._path))
            return None

    def save(self, device: LockedDevice) -> None:
        _write_atomic(self._path, device.model_dump_json())
        logger.info("locked device saved", device_id=device.id, device_name=device.name)


class TokenStore:
    def __init__(self, file_path: str | Path) -> None:
        self._path = Path(file_path)

    def load(self) -> StoredTokens | None:
        data = _read_json(self._path)
        if data is None:
            return None
        try:
            return StoredTokens.model_validate(data)
        except ValidationError:
            logger.warning("ignoring malformed token file", path=str(self._path))
            return None

    def save(self, tokens: StoredTokens) -> None:
        _write_atomic(self._path, tokens.model_dump_json())
