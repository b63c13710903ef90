# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides the per-trial, per-section draft cache.

Every value is stored as JSON under a namespaced key::

    draft:{section}:{trial_id}     DraftEntry
    commit-marker:{trial_id}       RemoteCommitMarker
    snapshot:{trial_id}            last known wire record
    local-save:{trial_id}          time of the last local-only save

The store never raises: a failed write is logged and dropped, and a failed
or corrupt read behaves as if nothing were stored.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ValidationError

from .models import DraftEntry, RemoteCommitMarker, SectionKey
from .store.base import DraftBackend

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DraftStore:
    """Write-through cache of edited section state, keyed by trial and section."""

    def __init__(
        self, backend: DraftBackend, clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.clock = clock or utc_now

    @staticmethod
    def draft_key(trial_id: str, section_key: SectionKey) -> str:
        return f"draft:{SectionKey(section_key).value}:{trial_id}"

    @staticmethod
    def marker_key(trial_id: str) -> str:
        return f"commit-marker:{trial_id}"

    @staticmethod
    def snapshot_key(trial_id: str) -> str:
        return f"snapshot:{trial_id}"

    @staticmethod
    def local_save_key(trial_id: str) -> str:
        return f"local-save:{trial_id}"

    def _load(self, key: str) -> Any | None:
        try:
            raw = self.backend.get(key)
        except Exception as e:
            logger.warning("Draft storage read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt draft storage value for %s.", key)
            return None

    def _save(self, key: str, value: Any) -> bool:
        try:
            self.backend.set(key, json.dumps(value, default=str))
        except Exception as e:
            logger.warning("Draft storage write failed for %s: %s", key, e)
            return False
        return True

    def _remove(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except Exception as e:
            logger.warning("Draft storage delete failed for %s: %s", key, e)

    def write(
        self,
        trial_id: str,
        section_key: SectionKey,
        payload: BaseModel | dict[str, Any],
        written_at: datetime | None = None,
    ) -> DraftEntry | None:
        """Overwrite the draft for one section, stamped with the current time.

        The stamp never goes backwards: if the entry being replaced is newer
        than the clock (or than ``written_at``), its timestamp is reused.

        Returns:
            The stored entry, or None if the backend rejected the write.
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        stamp = written_at or self.clock()
        previous = self.read(trial_id, section_key)
        if previous is not None and previous.written_at > stamp:
            stamp = previous.written_at

        entry = DraftEntry(
            section_key=section_key,
            trial_id=trial_id,
            payload=payload,
            written_at=stamp,
        )
        if not self._save(self.draft_key(trial_id, section_key), entry.model_dump(mode="json")):
            return None
        return entry

    def read(self, trial_id: str, section_key: SectionKey) -> DraftEntry | None:
        data = self._load(self.draft_key(trial_id, section_key))
        if data is None:
            return None
        try:
            return DraftEntry.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed draft for %s/%s: %s", trial_id, section_key, e)
            return None

    def clear(self, trial_id: str, section_key: SectionKey) -> None:
        self._remove(self.draft_key(trial_id, section_key))

    def clear_all(self, trial_id: str) -> None:
        """Remove every section draft of a trial. The commit marker is kept."""
        for section_key in SectionKey:
            self.clear(trial_id, section_key)

    def drafts(self, trial_id: str) -> dict[SectionKey, DraftEntry]:
        found = {}
        for section_key in SectionKey:
            entry = self.read(trial_id, section_key)
            if entry is not None:
                found[section_key] = entry
        return found

    def trial_ids(self) -> list[str]:
        """Return the trials that currently hold at least one draft."""
        try:
            keys = self.backend.keys("draft:")
        except Exception as e:
            logger.warning("Draft storage listing failed: %s", e)
            return []
        return sorted({key.split(":", 2)[2] for key in keys if key.count(":") >= 2})

    def read_marker(self, trial_id: str) -> RemoteCommitMarker | None:
        data = self._load(self.marker_key(trial_id))
        if data is None:
            return None
        try:
            return RemoteCommitMarker.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed commit marker for %s: %s", trial_id, e)
            return None

    def write_marker(
        self, trial_id: str, committed_at: datetime | None = None,
    ) -> RemoteCommitMarker:
        marker = RemoteCommitMarker(
            trial_id=trial_id, committed_at=committed_at or self.clock(),
        )
        self._save(self.marker_key(trial_id), marker.model_dump(mode="json"))
        return marker

    def write_snapshot(self, trial_id: str, record: dict[str, Any]) -> None:
        self._save(self.snapshot_key(trial_id), record)

    def read_snapshot(self, trial_id: str) -> dict[str, Any] | None:
        data = self._load(self.snapshot_key(trial_id))
        return data if isinstance(data, dict) else None

    def mark_local_save(self, trial_id: str) -> datetime:
        stamp = self.clock()
        self._save(self.local_save_key(trial_id), stamp.isoformat())
        return stamp

    def read_local_save(self, trial_id: str) -> datetime | None:
        data = self._load(self.local_save_key(trial_id))
        if not isinstance(data, str):
            return None
        try:
            return datetime.fromisoformat(data)
        except ValueError:
            return None
