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
"""Decides per section whether a local draft or the canonical copy wins."""

import logging

from pydantic import BaseModel, ValidationError

from .drafts import DraftStore
from .models import SECTION_MODELS, SectionKey, SectionSource

logger = logging.getLogger(__name__)


class ConflictResolver:
    """Last-writer-wins per section, judged against the commit marker.

    There is no field-level merge: a section comes wholly from the draft or
    wholly from the canonical copy.
    """

    def __init__(self, drafts: DraftStore) -> None:
        self.drafts = drafts

    def resolve(
        self,
        trial_id: str,
        section_key: SectionKey,
        canonical: BaseModel,
        skip_draft: bool = False,
        canonical_source: SectionSource = SectionSource.CANONICAL,
    ) -> tuple[BaseModel, SectionSource]:
        """Pick the authoritative state for one section.

        Args:
            trial_id: The trial being loaded.
            section_key: The section being resolved.
            canonical: The section state mapped from the remote record (or the
                default template when there is no record).
            skip_draft: Ignore drafts and clear this section's draft.
            canonical_source: How to label ``canonical`` when it wins.

        Returns:
            The chosen state and where it came from.
        """
        if skip_draft:
            self.drafts.clear(trial_id, section_key)
            return canonical, canonical_source

        entry = self.drafts.read(trial_id, section_key)
        if entry is None:
            return canonical, canonical_source

        marker = self.drafts.read_marker(trial_id)
        if marker is not None and entry.written_at <= marker.committed_at:
            logger.debug(
                "Draft for %s/%s predates the last commit; using canonical data.",
                trial_id,
                section_key.value,
            )
            return canonical, canonical_source

        try:
            state = SECTION_MODELS[section_key].model_validate(entry.payload)
        except ValidationError as e:
            logger.warning(
                "Draft for %s/%s does not match the section schema; ignoring it: %s",
                trial_id,
                section_key.value,
                e,
            )
            return canonical, canonical_source
        logger.info("Using local draft for %s/%s.", trial_id, section_key.value)
        return state, SectionSource.DRAFT
