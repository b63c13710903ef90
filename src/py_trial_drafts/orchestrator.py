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
"""Persists an edited trial to the remote store, section by section.

A save probes the store, writes each section independently, then reloads
the trial so the session reflects what the store actually holds. When the
store is unreachable the whole state is kept locally instead.
"""

import asyncio
import json
import logging
from datetime import timedelta
from enum import Enum
from typing import Any

import httpx

from . import mapper
from .config import Settings
from .models import (
    LoadResult,
    SaveReport,
    SaveStatus,
    SectionKey,
    SectionResult,
    TrialState,
)
from .session import EditSession

logger = logging.getLogger(__name__)

SAVE_ORDER = (
    SectionKey.OVERVIEW,
    SectionKey.OUTCOME,
    SectionKey.CRITERIA,
    SectionKey.SITES,
    SectionKey.TIMING,
    SectionKey.RESULTS,
    SectionKey.OTHER_SOURCES,
    SectionKey.LOGS,
    SectionKey.NOTES,
)


class SaveState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    SAVING = "saving"
    RECONCILING = "reconciling"
    LOCAL_ONLY = "local_only"


def _failure(response: httpx.Response | None) -> SectionResult:
    if response is None:
        return SectionResult(ok=False, detail="No response from the record store.")
    return SectionResult(
        ok=False, status_code=response.status_code, detail=response.text[:200],
    )


def _deleted(response: httpx.Response | None) -> bool:
    return response is not None and (response.is_success or response.status_code == 404)


class SaveOrchestrator:
    """Runs the save pipeline for the trial held by an ``EditSession``."""

    def __init__(self, session: EditSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or session.settings
        self.client = session.client
        self.drafts = session.drafts
        self.state = SaveState.IDLE
        self.history = [SaveState.IDLE]

    def _transition(self, state: SaveState) -> None:
        logger.debug("Save state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    async def save(self) -> SaveReport:
        """Save every section of the loaded trial.

        Returns:
            A report whose status is ``failed`` only if the overview could
            not be saved. Failures of other sections leave the save
            ``partial`` and their edits survive as drafts.
        """
        trial_id = self.session.trial_id
        if not trial_id:
            msg = "No trial is loaded; nothing to save."
            raise ValueError(msg)
        if self.session.is_saving:
            return SaveReport(status=SaveStatus.FAILED, message="A save is already running.")

        self.session.is_saving = True
        try:
            self._transition(SaveState.PROBING)
            saved = self.session.state
            if not saved.identity.overview_id or not await self.client.probe():
                return self._save_locally(trial_id, saved)

            self._transition(SaveState.SAVING)
            results = await self._save_sections(saved)

            self._transition(SaveState.RECONCILING)
            load = await self._reconcile(trial_id, saved, results)
            return self._report(results, load)
        finally:
            self.session.is_saving = False
            self._transition(SaveState.IDLE)

    def _save_locally(self, trial_id: str, state: TrialState) -> SaveReport:
        self._transition(SaveState.LOCAL_ONLY)
        logger.warning("Record store unreachable; saving trial %s locally.", trial_id)
        sections = {key: state.section(key) for key in SectionKey}
        for key, section in sections.items():
            self.drafts.write(trial_id, key, section)
        self.drafts.write_snapshot(
            trial_id, mapper.record_from_sections(sections, state.identity),
        )
        self.drafts.mark_local_save(trial_id)
        return SaveReport(
            status=SaveStatus.LOCAL_ONLY,
            message="Saved locally. Changes are kept as drafts until the store is reachable.",
        )

    async def _save_sections(self, state: TrialState) -> dict[SectionKey, SectionResult]:
        results: dict[SectionKey, SectionResult] = {}
        db_trial_id = state.identity.db_trial_id or state.identity.trial_id
        for key in SAVE_ORDER:
            try:
                if key == SectionKey.OVERVIEW:
                    result, returned_id = await self._save_overview(state)
                    db_trial_id = returned_id or db_trial_id
                elif key == SectionKey.OTHER_SOURCES:
                    result = await self._save_other_sources(state, db_trial_id)
                elif key == SectionKey.NOTES:
                    result = await self._save_notes(state, db_trial_id)
                else:
                    result = await self._save_upsert(state, key, db_trial_id)
            except (httpx.HTTPError, ValueError) as e:
                logger.error("Saving section %s failed: %s", key.value, e)
                result = SectionResult(ok=False, detail=str(e))
            if not result.ok:
                logger.error("Section %s was not saved: %s", key.value, result.detail)
            results[key] = result
        return results

    async def _save_overview(self, state: TrialState) -> tuple[SectionResult, str | None]:
        body = mapper.to_wire(SectionKey.OVERVIEW, state.overview)
        body["user_id"] = self.settings.actor
        response = await self.client.update_overview(state.identity.overview_id, body)
        if response is None or not response.is_success:
            return _failure(response), None

        returned_id = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            data = data.get("data", data)
            if isinstance(data, dict) and data.get("trial_id"):
                returned_id = str(data["trial_id"])
        return SectionResult(ok=True, status_code=response.status_code), returned_id

    async def _save_upsert(
        self, state: TrialState, key: SectionKey, db_trial_id: str,
    ) -> SectionResult:
        section = state.section(key)
        if key == SectionKey.LOGS:
            section = section.model_copy(
                update={
                    "last_modified_date": self.drafts.clock().isoformat(),
                    "last_modified_user": self.settings.actor,
                },
            )
        body: dict[str, Any] = mapper.to_wire(key, section)
        body.update(trial_id=db_trial_id, user_id=self.settings.actor)
        response = await self.client.update_section(key, db_trial_id, body)
        if response is None or not response.is_success:
            return _failure(response)
        return SectionResult(ok=True, status_code=response.status_code)

    async def _save_other_sources(self, state: TrialState, db_trial_id: str) -> SectionResult:
        rows = mapper.to_wire(SectionKey.OTHER_SOURCES, state.other_sources)
        response = await self.client.delete_collection(SectionKey.OTHER_SOURCES, db_trial_id)
        if not _deleted(response):
            result = _failure(response)
            result.items_total = len(rows)
            result.items_failed = len(rows)
            return result

        responses = await asyncio.gather(
            *(
                self.client.create_item(
                    SectionKey.OTHER_SOURCES,
                    {"trial_id": db_trial_id, "data": json.dumps(row)},
                )
                for row in rows
            ),
        )
        failed = sum(1 for r in responses if r is None or not r.is_success)
        detail = f"{failed} of {len(rows)} sources were not created." if failed else ""
        return SectionResult(
            ok=not failed, detail=detail, items_total=len(rows), items_failed=failed,
        )

    async def _save_notes(self, state: TrialState, db_trial_id: str) -> SectionResult:
        notes = mapper.to_wire(SectionKey.NOTES, state.notes)["notes"]
        response = await self.client.delete_collection(SectionKey.NOTES, db_trial_id)
        if not _deleted(response):
            return _failure(response)
        if not notes:
            return SectionResult(ok=True)

        response = await self.client.create_item(
            SectionKey.NOTES, {"trial_id": db_trial_id, "notes": notes},
        )
        if response is None or not response.is_success:
            result = _failure(response)
            result.items_total = result.items_failed = len(notes)
            return result
        return SectionResult(ok=True, status_code=response.status_code, items_total=len(notes))

    async def _reconcile(
        self,
        trial_id: str,
        saved: TrialState,
        results: dict[SectionKey, SectionResult],
    ) -> LoadResult:
        """Let the store settle, stamp the commit marker and reload.

        Drafts of sections that failed, or were edited while the save ran,
        are re-stamped just after the marker so the reload keeps them.
        """
        await asyncio.sleep(self.settings.settle_delay)
        marker = self.drafts.write_marker(trial_id)

        current = self.session.state
        keep = {key for key, result in results.items() if not result.ok}
        keep |= {key for key in SectionKey if current.section(key) != saved.section(key)}
        stamp = marker.committed_at + timedelta(microseconds=1)
        for key in keep:
            self.drafts.write(trial_id, key, current.section(key), written_at=stamp)

        sections = {key: saved.section(key) for key in SectionKey}
        self.drafts.write_snapshot(
            trial_id, mapper.record_from_sections(sections, saved.identity),
        )
        return await self.session.load(trial_id, skip_draft=True, keep_drafts=keep)

    def _report(
        self, results: dict[SectionKey, SectionResult], load: LoadResult,
    ) -> SaveReport:
        failed = [key.value for key, result in results.items() if not result.ok]
        if not results[SectionKey.OVERVIEW].ok:
            status = SaveStatus.FAILED
            message = "The overview could not be saved; edits are kept as drafts."
        elif failed:
            status = SaveStatus.PARTIAL
            message = f"Saved with errors in: {', '.join(failed)}. Their edits are kept as drafts."
        else:
            status = SaveStatus.SUCCESS
            message = "All sections saved."
        logger.info("Save finished with status %s.", status.value)
        return SaveReport(status=status, sections=results, message=message, load=load)
