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
"""Defines the Pydantic data models for the application.

A trial record is split into independently persisted sections. Each section
has a normalized, in-memory model defined here; the mapper module converts
between these models and the remote store's wire payloads.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from pydantic import BaseModel, Field


class SectionKey(str, Enum):
    """Names of the independently persisted sections of a trial."""

    OVERVIEW = "overview"
    OUTCOME = "outcome"
    CRITERIA = "criteria"
    TIMING = "timing"
    RESULTS = "results"
    SITES = "sites"
    OTHER_SOURCES = "other_sources"
    NOTES = "notes"
    LOGS = "logs"


class Attachment(BaseModel):
    """A file reference held by a sub-item."""

    name: str = ""
    url: str = ""
    type: str = "application/octet-stream"


class SubItem(BaseModel):
    """Base class for one row of a section's list-valued collection.

    ``content_fields`` names the fields that make a row worth persisting.
    A row with none of them populated is an editing placeholder.
    """

    content_fields: ClassVar[tuple[str, ...]] = ()

    id: str = "1"
    is_visible: bool = True

    def has_content(self) -> bool:
        """Return True if any content field holds a non-empty value."""
        for name in self.content_fields:
            value = getattr(self, name)
            if isinstance(value, str):
                if value.strip():
                    return True
            elif value:
                return True
        return False

    def is_persistable(self) -> bool:
        return self.is_visible and self.has_content()


class Reference(SubItem):
    """A dated reference attached to the timing or sites section."""

    content_fields = ("date", "content", "attachments")

    date: str = ""
    registry_type: str = ""
    content: str = ""
    view_source: str = ""
    attachments: list[Attachment] = Field(default_factory=list)


class SiteNote(SubItem):
    """A dated note attached to the results section."""

    content_fields = ("date", "content", "attachments")

    date: str = ""
    note_type: str = ""
    content: str = ""
    source_link: str = ""
    source_type: str = ""
    attachments: list[Attachment] = Field(default_factory=list)


class SourceItem(SubItem):
    """Fields shared by every kind of auxiliary source."""

    url: str = ""
    file: str = ""
    file_url: str = ""


class PipelineItem(SourceItem):
    content_fields = ("date", "information", "url", "file")

    date: str = ""
    information: str = ""


class PressRelease(SourceItem):
    content_fields = ("date", "title", "description", "url", "file")

    date: str = ""
    title: str = ""
    description: str = ""


class Publication(SourceItem):
    content_fields = ("publication_type", "title", "description", "url", "file")

    publication_type: str = ""
    title: str = ""
    description: str = ""


class TrialRegistry(SourceItem):
    content_fields = ("registry", "identifier", "description", "url", "file")

    registry: str = ""
    identifier: str = ""
    description: str = ""


class AssociatedStudy(SourceItem):
    content_fields = ("study_type", "title", "description", "url", "file")

    study_type: str = ""
    title: str = ""
    description: str = ""


class Note(SubItem):
    """A free-form note in the notes section."""

    content_fields = ("content", "source_link", "source_type", "source_url", "attachments")

    date: str = ""
    type: str = "General"
    content: str = ""
    source_link: str = ""
    source_type: str = ""
    source_url: str = ""
    attachments: list[Attachment] = Field(default_factory=list)


class ChangeAction(str, Enum):
    CHANGED = "changed"
    ADDED = "added"
    REMOVED = "removed"


class ChangeLogEntry(BaseModel):
    """One append-only audit record of an edit."""

    id: str
    timestamp: datetime
    actor: str
    action: ChangeAction
    section_key: SectionKey
    field: str
    old_value: str = ""
    new_value: str = ""


class OverviewState(BaseModel):
    therapeutic_area: list[str] = Field(default_factory=list)
    trial_identifier: list[str] = Field(default_factory=list)
    trial_phase: str = ""
    status: str = ""
    primary_drugs: list[str] = Field(default_factory=list)
    other_drugs: list[str] = Field(default_factory=list)
    title: str = ""
    disease_type: list[str] = Field(default_factory=list)
    patient_segment: list[str] = Field(default_factory=list)
    line_of_therapy: list[str] = Field(default_factory=list)
    reference_links: list[str] = Field(default_factory=list)
    trial_tags: list[str] = Field(default_factory=list)
    sponsor_collaborators: list[str] = Field(default_factory=list)
    sponsor_field_activity: list[str] = Field(default_factory=list)
    associated_cro: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    region: list[str] = Field(default_factory=list)
    trial_record_status: str = ""


class OutcomeState(BaseModel):
    purpose_of_trial: str = ""
    summary: str = ""
    primary_outcome_measures: list[str] = Field(default_factory=list)
    other_outcome_measures: list[str] = Field(default_factory=list)
    study_design_keywords: list[str] = Field(default_factory=list)
    study_design: str = ""
    treatment_regimen: str = ""
    number_of_arms: str = ""


class CriteriaState(BaseModel):
    inclusion_criteria: list[str] = Field(default_factory=list)
    exclusion_criteria: list[str] = Field(default_factory=list)
    age_min: str = ""
    age_min_unit: str = "Years"
    age_max: str = ""
    age_max_unit: str = "Years"
    sex: str = ""
    healthy_volunteers: str = ""
    subject_type: str = ""
    target_no_volunteers: str = ""
    actual_enrolled_volunteers: str = ""


class TimingState(BaseModel):
    """Actual, benchmark and estimated milestones of a trial.

    Date fields hold the canonical in-memory ``MM-DD-YYYY`` form; period and
    duration fields are free text.
    """

    start_date_actual: str = ""
    start_date_benchmark: str = ""
    start_date_estimated: str = ""
    inclusion_period_actual: str = ""
    inclusion_period_benchmark: str = ""
    inclusion_period_estimated: str = ""
    enrollment_closed_actual: str = ""
    enrollment_closed_benchmark: str = ""
    enrollment_closed_estimated: str = ""
    primary_outcome_duration_actual: str = ""
    primary_outcome_duration_benchmark: str = ""
    primary_outcome_duration_estimated: str = ""
    trial_end_date_actual: str = ""
    trial_end_date_benchmark: str = ""
    trial_end_date_estimated: str = ""
    result_duration_actual: str = ""
    result_duration_benchmark: str = ""
    result_duration_estimated: str = ""
    result_published_date_actual: str = ""
    result_published_date_benchmark: str = ""
    result_published_date_estimated: str = ""
    overall_duration_complete: str = ""
    overall_duration_publish: str = ""
    references: list[Reference] = Field(default_factory=lambda: [Reference()])


class ResultsState(BaseModel):
    results_available: bool = False
    endpoints_met: bool = False
    trial_outcome: str = ""
    trial_outcome_reference_date: str = ""
    trial_outcome_content: str = ""
    trial_outcome_link: str = ""
    trial_outcome_attachment: Attachment | None = None
    trial_results: list[str] = Field(default_factory=list)
    adverse_event_reported: str = ""
    adverse_event_type: str = ""
    treatment_for_adverse_events: str = ""
    site_notes: list[SiteNote] = Field(default_factory=lambda: [SiteNote()])


class SitesState(BaseModel):
    total_sites: str = ""
    references: list[Reference] = Field(default_factory=lambda: [Reference()])


class OtherSourcesState(BaseModel):
    pipeline_data: list[PipelineItem] = Field(default_factory=lambda: [PipelineItem()])
    press_releases: list[PressRelease] = Field(default_factory=lambda: [PressRelease()])
    publications: list[Publication] = Field(default_factory=lambda: [Publication()])
    trial_registries: list[TrialRegistry] = Field(
        default_factory=lambda: [TrialRegistry()],
    )
    associated_studies: list[AssociatedStudy] = Field(
        default_factory=lambda: [AssociatedStudy()],
    )


class NotesState(BaseModel):
    notes: list[Note] = Field(default_factory=lambda: [Note()])


class LogsState(BaseModel):
    full_review: bool = False
    full_review_user: str = ""
    next_review_date: str = ""
    internal_note: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    last_modified_date: str = ""
    last_modified_user: str = ""
    changes_log: list[ChangeLogEntry] = Field(default_factory=list)


SectionState = Union[
    OverviewState,
    OutcomeState,
    CriteriaState,
    TimingState,
    ResultsState,
    SitesState,
    OtherSourcesState,
    NotesState,
    LogsState,
]

SECTION_MODELS: dict[SectionKey, type[BaseModel]] = {
    SectionKey.OVERVIEW: OverviewState,
    SectionKey.OUTCOME: OutcomeState,
    SectionKey.CRITERIA: CriteriaState,
    SectionKey.TIMING: TimingState,
    SectionKey.RESULTS: ResultsState,
    SectionKey.SITES: SitesState,
    SectionKey.OTHER_SOURCES: OtherSourcesState,
    SectionKey.NOTES: NotesState,
    SectionKey.LOGS: LogsState,
}


class TrialIdentity(BaseModel):
    """Identifiers needed to address a trial's sections remotely.

    ``trial_id`` is the identifier the session was opened with (it keys the
    draft store). ``db_trial_id`` is the store's own identifier used in
    per-section endpoints and ``overview_id`` addresses the overview row.
    """

    trial_id: str = ""
    db_trial_id: str = ""
    overview_id: str | None = None


class TrialState(BaseModel):
    """The complete in-memory state of one editing session."""

    identity: TrialIdentity = Field(default_factory=TrialIdentity)
    overview: OverviewState = Field(default_factory=OverviewState)
    outcome: OutcomeState = Field(default_factory=OutcomeState)
    criteria: CriteriaState = Field(default_factory=CriteriaState)
    timing: TimingState = Field(default_factory=TimingState)
    results: ResultsState = Field(default_factory=ResultsState)
    sites: SitesState = Field(default_factory=SitesState)
    other_sources: OtherSourcesState = Field(default_factory=OtherSourcesState)
    notes: NotesState = Field(default_factory=NotesState)
    logs: LogsState = Field(default_factory=LogsState)

    def section(self, key: SectionKey) -> BaseModel:
        return getattr(self, SectionKey(key).value)


class DraftEntry(BaseModel):
    """A locally persisted copy of one section's edited state."""

    section_key: SectionKey
    trial_id: str
    payload: dict[str, Any]
    written_at: datetime


class RemoteCommitMarker(BaseModel):
    """Records when a save run against the remote store last completed."""

    trial_id: str
    committed_at: datetime


class SectionSource(str, Enum):
    CANONICAL = "canonical"
    DRAFT = "draft"
    DEFAULT = "default"


class LoadStatus(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"
    DRAFTS_ONLY = "drafts_only"
    NOT_FOUND = "not_found"
    SUPERSEDED = "superseded"


class LoadResult(BaseModel):
    status: LoadStatus
    sources: dict[SectionKey, SectionSource] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status not in (LoadStatus.NOT_FOUND, LoadStatus.SUPERSEDED)


class SaveStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    LOCAL_ONLY = "local_only"


class SectionResult(BaseModel):
    """Outcome of saving one section."""

    ok: bool
    status_code: int | None = None
    detail: str = ""
    items_total: int = 0
    items_failed: int = 0


class SaveReport(BaseModel):
    status: SaveStatus
    sections: dict[SectionKey, SectionResult] = Field(default_factory=dict)
    message: str = ""
    load: LoadResult | None = None

    @property
    def ok(self) -> bool:
        return self.status != SaveStatus.FAILED

    @property
    def failed_sections(self) -> list[SectionKey]:
        return [key for key, result in self.sections.items() if not result.ok]
