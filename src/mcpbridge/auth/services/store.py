"""Credential persistence.

A narrow get/put/delete interface keyed by the normalized account id,
with a JSON-file backend for deployments and an in-memory backend for
tests and ephemeral runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from mcpbridge.auth.models.credentials import CredentialRecord, normalize_account_id
from mcpbridge.auth.models.errors import CredentialStoreError

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Durable storage of one credential record per account."""

    async def get(self, account_id: str) -> CredentialRecord | None: ...

    async def put(self, record: CredentialRecord) -> None: ...

    async def delete(self, account_id: str) -> bool: ...


class MemoryCredentialStore:
    """Process-local credential store. Lost on restart."""

    def __init__(self) -> None:
        self._records: dict[str, dict] = {}

    async def get(self, account_id: str) -> CredentialRecord | None:
        data = self._records.get(normalize_account_id(account_id))
        if data is None:
            return None
        # Callers get a copy; stored data changes only through put()
        return CredentialRecord.model_validate(data)

    async def put(self, record: CredentialRecord) -> None:
        self._records[record.account_id] = record.to_storage()

    async def delete(self, account_id: str) -> bool:
        return self._records.pop(normalize_account_id(account_id), None) is not None


class FileCredentialStore:
    """Stores each record as ``<directory>/<normalized account id>.json``.

    Writes go through a temporary file and an atomic rename so a crash
    never leaves a half-written credential behind.

    Raises:
        CredentialStoreError: From every operation, on an invalid account
            id or a filesystem failure
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, account_id: str) -> Path:
        key = normalize_account_id(account_id)
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise CredentialStoreError(f"Invalid account id for storage: {account_id!r}")
        return self.directory / f"{key}.json"

    async def get(self, account_id: str) -> CredentialRecord | None:
        path = self.path_for(account_id)
        try:
            return await asyncio.to_thread(self._read, path)
        except OSError as e:
            raise CredentialStoreError(f"Cannot read credential file {path}: {e}") from e

    async def put(self, record: CredentialRecord) -> None:
        path = self.path_for(record.account_id)
        try:
            await asyncio.to_thread(self._write, path, record.to_storage())
        except OSError as e:
            raise CredentialStoreError(f"Cannot write credential file {path}: {e}") from e
        logger.info(f"Saved credential for account {record.account_id}")

    async def delete(self, account_id: str) -> bool:
        path = self.path_for(account_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CredentialStoreError(f"Cannot delete credential file {path}: {e}") from e
        logger.info(f"Deleted credential for account {normalize_account_id(account_id)}")
        return True

    def _read(self, path: Path) -> CredentialRecord | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            return CredentialRecord.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Ignoring unreadable credential file {path}: {e}")
            return None

    def _write(self, path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(data, fp, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
