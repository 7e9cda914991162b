"""Persisted client credential state.

The access credential is never persisted. What survives a reload is the
renewal secret, the session id and the last-activity timestamp, shared by
every tab of the same origin.
"""
import logging
import os
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class StoredCredentials(BaseModel):
    renewal_secret: str | None = None
    session_id: str | None = None
    last_activity_at: float | None = None


class CredentialStorage(Protocol):
    def load(self) -> StoredCredentials: ...

    def save(self, credentials: StoredCredentials) -> None: ...

    def clear(self) -> None: ...


def update(storage: CredentialStorage, **changes) -> StoredCredentials:
    """Read-modify-write a subset of the stored fields."""
    credentials = storage.load().model_copy(update=changes)
    storage.save(credentials)
    return credentials


class MemoryStorage:
    """Process-local storage; share one instance between tabs of an origin."""

    def __init__(self, credentials: StoredCredentials | None = None):
        self._credentials = credentials or StoredCredentials()

    def load(self) -> StoredCredentials:
        return self._credentials.model_copy()

    def save(self, credentials: StoredCredentials) -> None:
        self._credentials = credentials.model_copy()

    def clear(self) -> None:
        self._credentials = StoredCredentials()


class JsonFileStorage:
    """Storage backed by a JSON file, written atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> StoredCredentials:
        if not self.path.exists():
            return StoredCredentials()
        try:
            return StoredCredentials.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError:
            logger.warning(f"Ignoring unreadable credential file {self.path}")
            return StoredCredentials()

    def save(self, credentials: StoredCredentials) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(credentials.model_dump_json(), encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
