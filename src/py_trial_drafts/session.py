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
"""Holds the in-memory state of one editing session.

Every state transition goes through ``EditSession.dispatch``. Mutations of
drafting-enabled sections are written through to the draft store and
recorded in the change log, which lives in the logs section.
"""

import logging
import uuid
from collections.abc import Iterable
from typing import Any, get_args

from . import mapper
from .attachments import AttachmentStoreClient, DeleteOutcome
from .changelog import ChangeLogRecorder
from .client import RecordStoreClient
from .config import Settings
from .drafts import DraftStore
from .models import (
    SECTION_MODELS,
    Attachment,
    ChangeAction,
    ChangeLogEntry,
    LoadResult,
    LoadStatus,
    SectionKey,
    SectionSource,
    SubItem,
    TrialState,
)
from .reducer import (
    FIELD_ACTIONS,
    Action,
    AddArrayItem,
    AppendChangeLog,
    InvalidMutationError,
    RemoveArrayItem,
    ResetForm,
    SetTrialData,
    ToggleVisibility,
    UpdateArrayItem,
    UpdateField,
    reduce,
)
from .resolver import ConflictResolver

logger = logging.getLogger(__name__)


class EditSession:
    """The single source of truth while a trial is being edited."""

    def __init__(
        self,
        settings: Settings,
        client: RecordStoreClient,
        drafts: DraftStore,
        attachments: AttachmentStoreClient | None = None,
        recorder: ChangeLogRecorder | None = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.drafts = drafts
        self.attachments = attachments
        self.recorder = recorder or ChangeLogRecorder(settings.actor, clock=drafts.clock)
        self.resolver = ConflictResolver(drafts)
        self.drafting_sections = frozenset(settings.drafting_sections)
        self.state = TrialState()
        self.is_loading = False
        self.is_saving = False
        self._generation = 0

    @property
    def trial_id(self) -> str:
        return self.state.identity.trial_id

    def dispatch(self, action: Action) -> TrialState:
        """Apply an action, then write the draft and log the change."""
        previous = self.state
        self.state = reduce(previous, action)
        if isinstance(action, FIELD_ACTIONS):
            self._write_draft(action.section_key)
            self._record_change(previous, action)
        return self.state

    def _write_draft(self, section_key: SectionKey) -> None:
        if not self.trial_id or section_key not in self.drafting_sections:
            return
        self.drafts.write(self.trial_id, section_key, self.state.section(section_key))

    def _record_change(self, previous: TrialState, action: Any) -> None:
        current = getattr(previous.section(action.section_key), action.field)
        index = getattr(action, "index", None)

        if isinstance(action, UpdateField):
            change, old, new = ChangeAction.CHANGED, current, action.value
        elif isinstance(action, AddArrayItem):
            change, old, new = ChangeAction.ADDED, None, action.value
            index = len(current)
        elif isinstance(action, RemoveArrayItem):
            change, old, new = ChangeAction.REMOVED, current[index], None
        elif isinstance(action, UpdateArrayItem):
            change, old, new = ChangeAction.CHANGED, current[index], action.value
        else:
            visible = current[index].is_visible
            change, old, new = ChangeAction.CHANGED, visible, not visible

        entry = self.recorder.entry(change, action.section_key, action.field, old, new, index)
        self.append_change(entry)

    def append_change(self, entry: ChangeLogEntry) -> None:
        self.state = reduce(self.state, AppendChangeLog(entry=entry))
        self._write_draft(SectionKey.LOGS)

    @property
    def change_log(self) -> list[ChangeLogEntry]:
        return self.state.logs.changes_log

    def update_field(self, section_key: SectionKey, field: str, value: Any) -> TrialState:
        return self.dispatch(UpdateField(section_key=section_key, field=field, value=value))

    def add_array_item(self, section_key: SectionKey, field: str, value: Any) -> TrialState:
        return self.dispatch(AddArrayItem(section_key=section_key, field=field, value=value))

    def remove_array_item(self, section_key: SectionKey, field: str, index: int) -> TrialState:
        return self.dispatch(RemoveArrayItem(section_key=section_key, field=field, index=index))

    def update_array_item(
        self, section_key: SectionKey, field: str, index: int, value: Any,
    ) -> TrialState:
        return self.dispatch(
            UpdateArrayItem(section_key=section_key, field=field, index=index, value=value),
        )

    def toggle_visibility(self, section_key: SectionKey, field: str, index: int) -> TrialState:
        return self.dispatch(ToggleVisibility(section_key=section_key, field=field, index=index))

    def add_sub_item(self, section_key: SectionKey, field: str) -> str:
        """Append an empty, visible sub-item to a collection and return its id."""
        annotation = SECTION_MODELS[section_key].model_fields[field].annotation
        item_types = get_args(annotation)
        if not item_types or not issubclass(item_types[0], SubItem):
            msg = f"Field '{section_key.value}.{field}' is not a sub-item collection."
            raise InvalidMutationError(msg)
        item = item_types[0](id=uuid.uuid4().hex)
        self.add_array_item(section_key, field, item)
        return item.id

    def update_sub_item(
        self, section_key: SectionKey, field: str, index: int, **changes: Any,
    ) -> TrialState:
        """Change some fields of one sub-item, keeping the others."""
        items = getattr(self.state.section(section_key), field)
        if not 0 <= index < len(items) or not isinstance(items[index], SubItem):
            msg = f"No sub-item {index} in '{section_key.value}.{field}'."
            raise InvalidMutationError(msg)
        value = {**items[index].model_dump(), **changes}
        return self.update_array_item(section_key, field, index, value)

    def reset(self) -> TrialState:
        return self.dispatch(ResetForm())

    async def load(
        self,
        trial_id: str,
        skip_draft: bool = False,
        keep_drafts: Iterable[SectionKey] = (),
    ) -> LoadResult:
        """Load a trial and install the resolved state.

        The remote record is preferred, then the locally kept snapshot, then
        the default templates. Each section is then resolved against its
        draft. If another load is issued while this one is waiting on the
        network, this one finishes without touching the session state.

        Args:
            trial_id: Identifier of the trial to load.
            skip_draft: Use canonical data and clear the trial's drafts.
            keep_drafts: Sections still resolved against their drafts even
                when ``skip_draft`` is set.
        """
        self._generation += 1
        generation = self._generation
        keep = frozenset(keep_drafts)
        self.is_loading = True
        try:
            record = await self.client.fetch_trial(trial_id)
            if generation != self._generation:
                logger.info("Discarding superseded load of trial %s.", trial_id)
                return LoadResult(status=LoadStatus.SUPERSEDED)

            if record is not None:
                status = LoadStatus.REMOTE
                self.drafts.write_snapshot(trial_id, record)
            else:
                record = self.drafts.read_snapshot(trial_id)
                status = LoadStatus.LOCAL if record is not None else LoadStatus.NOT_FOUND
                if record is not None:
                    logger.warning("Record store unavailable; loaded local copy of %s.", trial_id)

            canonical = mapper.sections_from_record(record, trial_id)
            canonical_source = (
                SectionSource.DEFAULT if record is None else SectionSource.CANONICAL
            )
            sections = {}
            sources = {}
            for key in SectionKey:
                sections[key.value], sources[key] = self.resolver.resolve(
                    trial_id,
                    key,
                    canonical[key],
                    skip_draft=skip_draft and key not in keep,
                    canonical_source=canonical_source,
                )

            if status == LoadStatus.NOT_FOUND and SectionSource.DRAFT in sources.values():
                status = LoadStatus.DRAFTS_ONLY
            identity = mapper.identity_from_record(record, trial_id)
            self.dispatch(SetTrialData(state=TrialState(identity=identity, **sections)))
            logger.info("Loaded trial %s (%s).", trial_id, status.value)
            return LoadResult(status=status, sources=sources)
        finally:
            if generation == self._generation:
                self.is_loading = False

    def _attachment_target(
        self, section_key: SectionKey, field: str, index: int | None = None,
    ) -> Any:
        """Return the field holding attachments, or sub-item ``index`` of it."""
        model_fields = SECTION_MODELS[section_key].model_fields
        if field not in model_fields:
            msg = f"Section '{section_key.value}' has no field '{field}'."
            raise InvalidMutationError(msg)
        target = getattr(self.state.section(section_key), field)
        if index is None:
            if Attachment not in get_args(model_fields[field].annotation):
                msg = f"'{section_key.value}.{field}' does not hold attachments."
                raise InvalidMutationError(msg)
            return target
        if (
            not isinstance(target, list)
            or not 0 <= index < len(target)
            or not hasattr(target[index], "attachments")
        ):
            msg = f"No sub-item {index} with attachments in '{section_key.value}.{field}'."
            raise InvalidMutationError(msg)
        return target[index]

    async def attach_file(
        self,
        section_key: SectionKey,
        field: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
        index: int | None = None,
    ) -> Attachment | None:
        """Upload a file and reference it from the session state.

        With ``index`` the attachment is added to that sub-item of ``field``;
        otherwise ``field`` itself holds attachments (a list or a single one).

        Returns:
            The new attachment, or None if the upload failed.
        """
        if self.attachments is None:
            msg = "No attachment store is configured."
            raise RuntimeError(msg)
        # The destination is checked before anything is stored remotely.
        self._attachment_target(section_key, field, index)

        try:
            attachment = await self.attachments.upload(filename, content, content_type)
        except (RuntimeError, ValueError) as e:
            logger.error("Upload of %s failed: %s", filename, e)
            return None

        target = self._attachment_target(section_key, field, index)
        if index is not None:
            self.update_sub_item(
                section_key, field, index, attachments=[*target.attachments, attachment],
            )
        elif isinstance(target, list):
            self.add_array_item(section_key, field, attachment)
        else:
            self.update_field(section_key, field, attachment)
        return attachment

    async def remove_attachment(
        self,
        section_key: SectionKey,
        field: str,
        url: str,
        index: int | None = None,
    ) -> DeleteOutcome:
        """Drop an attachment reference, then delete the stored file.

        The reference is removed first and stays removed whatever the store
        answers; the classified outcome tells the caller whether to notify.
        """
        target = self._attachment_target(section_key, field, index)
        if index is not None:
            remaining = [a for a in target.attachments if a.url != url]
            if len(remaining) == len(target.attachments):
                msg = f"Sub-item {index} of '{section_key.value}.{field}' has no attachment {url}."
                raise InvalidMutationError(msg)
            self.update_sub_item(section_key, field, index, attachments=remaining)
        elif isinstance(target, list):
            position = next((i for i, a in enumerate(target) if a.url == url), None)
            if position is None:
                msg = f"'{section_key.value}.{field}' has no attachment {url}."
                raise InvalidMutationError(msg)
            self.remove_array_item(section_key, field, position)
        else:
            if target is None or target.url != url:
                msg = f"'{section_key.value}.{field}' does not hold attachment {url}."
                raise InvalidMutationError(msg)
            self.update_field(section_key, field, None)

        if not url or self.attachments is None:
            return DeleteOutcome.OK
        outcome = await self.attachments.delete(url)
        if outcome is DeleteOutcome.OTHER:
            logger.warning("Could not delete attachment %s; the reference was removed.", url)
        elif outcome is not DeleteOutcome.OK:
            logger.info("Attachment %s treated as already deleted (%s).", url, outcome.value)
        return outcome
