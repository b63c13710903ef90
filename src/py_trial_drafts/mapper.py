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
"""Translates between section wire payloads and normalized section models.

``from_wire`` and ``to_wire`` are total: anomalies in the wire data are
logged and replaced by defaults, never raised.
"""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from . import parser
from .models import (
    SECTION_MODELS,
    AssociatedStudy,
    ChangeLogEntry,
    CriteriaState,
    LogsState,
    Note,
    NotesState,
    OtherSourcesState,
    OutcomeState,
    OverviewState,
    PipelineItem,
    PressRelease,
    Publication,
    Reference,
    ResultsState,
    SectionKey,
    SiteNote,
    SitesState,
    SubItem,
    TimingState,
    TrialIdentity,
    TrialRegistry,
)

logger = logging.getLogger(__name__)

AUTO_IDENTIFIER = re.compile(r"^TB-\d{6}$")

# Key of each section inside a TrialRecord. Single-row sections are stored
# by the remote store as a list holding one row.
RECORD_KEYS = {
    SectionKey.OVERVIEW: "overview",
    SectionKey.OUTCOME: "outcomes",
    SectionKey.CRITERIA: "criteria",
    SectionKey.TIMING: "timing",
    SectionKey.RESULTS: "results",
    SectionKey.SITES: "sites",
    SectionKey.OTHER_SOURCES: "other",
    SectionKey.NOTES: "notes",
    SectionKey.LOGS: "logs",
}

OVERVIEW_LIST_FIELDS = (
    "therapeutic_area",
    "disease_type",
    "patient_segment",
    "line_of_therapy",
    "trial_tags",
    "sponsor_collaborators",
    "sponsor_field_activity",
    "associated_cro",
    "countries",
    "region",
)
OVERVIEW_DRUG_FIELDS = ("primary_drugs", "other_drugs")
OVERVIEW_TEXT_FIELDS = ("trial_phase", "status", "title", "trial_record_status")

TIMING_DATE_FIELDS = tuple(
    f"{milestone}_{kind}"
    for milestone in (
        "start_date",
        "enrollment_closed",
        "trial_end_date",
        "result_published_date",
    )
    for kind in ("actual", "benchmark", "estimated")
)
TIMING_TEXT_FIELDS = tuple(
    f"{period}_{kind}"
    for period in ("inclusion_period", "primary_outcome_duration", "result_duration")
    for kind in ("actual", "benchmark", "estimated")
) + ("overall_duration_complete", "overall_duration_publish")

RESULTS_TEXT_FIELDS = (
    "trial_outcome",
    "trial_outcome_content",
    "trial_outcome_link",
    "adverse_event_reported",
    "adverse_event_type",
    "treatment_for_adverse_events",
)

# Per category: model, then (model field, wire key) pairs besides id/url/file.
SOURCE_CATEGORIES: dict[str, tuple[type[SubItem], tuple[tuple[str, str], ...]]] = {
    "pipeline_data": (
        PipelineItem,
        (("date", "date"), ("information", "information")),
    ),
    "press_releases": (
        PressRelease,
        (("date", "date"), ("title", "title"), ("description", "description")),
    ),
    "publications": (
        Publication,
        (
            ("publication_type", "publicationType"),
            ("title", "title"),
            ("description", "description"),
        ),
    ),
    "trial_registries": (
        TrialRegistry,
        (
            ("registry", "registry"),
            ("identifier", "identifier"),
            ("description", "description"),
        ),
    ),
    "associated_studies": (
        AssociatedStudy,
        (
            ("study_type", "studyType"),
            ("title", "title"),
            ("description", "description"),
        ),
    ),
}


def _as_row(payload: Any, section_key: SectionKey) -> dict[str, Any]:
    if payload is None:
        return {}
    if isinstance(payload, list):
        payload = next((row for row in payload if isinstance(row, dict)), {})
    if not isinstance(payload, dict):
        logger.warning(
            "Expected an object for section %s, got %s.",
            section_key.value,
            type(payload).__name__,
        )
        return {}
    return payload


def _row_id(row: dict[str, Any], index: int) -> str:
    return parser.to_text(row.get("id")).strip() or str(index)


def _is_visible(row: dict[str, Any]) -> bool:
    value = row.get("isVisible", row.get("is_visible", True))
    return value is not False


def _with_template(items: list, model: type[SubItem]) -> list:
    return items or [model()]


def _note_content(value: Any) -> str:
    if isinstance(value, dict):
        return parser.to_text(value.get("text") or value.get("content") or value)
    return parser.to_text(value)


def _overview_from_wire(payload: Any, trial_id: str = "") -> OverviewState:
    row = _as_row(payload, SectionKey.OVERVIEW)
    data: dict[str, Any] = {
        name: parser.GENERIC_LIST.decode(row.get(name)) for name in OVERVIEW_LIST_FIELDS
    }
    data.update(
        {name: parser.DRUG_LIST.decode(row.get(name)) for name in OVERVIEW_DRUG_FIELDS},
    )
    data.update(
        {name: parser.to_text(row.get(name)).strip() for name in OVERVIEW_TEXT_FIELDS},
    )
    data["reference_links"] = parser.GENERIC_LIST.decode(row.get("reference_links"))

    identifiers = parser.GENERIC_LIST.decode(row.get("trial_identifier"))
    candidates = [parser.to_text(row.get("trial_id")).strip(), trial_id, *identifiers]
    auto_id = next((c for c in candidates if AUTO_IDENTIFIER.match(c)), "")
    if not auto_id:
        seed = (
            parser.to_text(row.get("id")).strip()
            or parser.to_text(row.get("trial_id")).strip()
            or trial_id
        )
        auto_id = parser.auto_identifier(seed)
    data["trial_identifier"] = [auto_id] + [i for i in identifiers if i != auto_id]
    return OverviewState(**data)


def _overview_to_wire(state: OverviewState) -> dict[str, Any]:
    wire: dict[str, Any] = {
        name: parser.GENERIC_LIST.encode(getattr(state, name))
        for name in OVERVIEW_LIST_FIELDS
    }
    wire.update(
        {
            name: parser.DRUG_LIST.encode(getattr(state, name))
            for name in OVERVIEW_DRUG_FIELDS
        },
    )
    wire.update(
        {name: parser.to_nullable(getattr(state, name)) for name in OVERVIEW_TEXT_FIELDS},
    )
    wire["trial_identifier"] = [i.strip() for i in state.trial_identifier if i.strip()]
    wire["reference_links"] = [r.strip() for r in state.reference_links if r.strip()]
    return wire


def _outcome_from_wire(payload: Any) -> OutcomeState:
    row = _as_row(payload, SectionKey.OUTCOME)
    return OutcomeState(
        purpose_of_trial=parser.to_text(row.get("purpose_of_trial")),
        summary=parser.to_text(row.get("summary")),
        primary_outcome_measures=parser.MEASURE_LIST.decode(
            row.get("primary_outcome_measure"),
        ),
        other_outcome_measures=parser.MEASURE_LIST.decode(
            row.get("other_outcome_measure"),
        ),
        study_design_keywords=parser.KEYWORD_LIST.decode(
            row.get("study_design_keywords"),
        ),
        study_design=parser.to_text(row.get("study_design")),
        treatment_regimen=parser.to_text(row.get("treatment_regimen")),
        number_of_arms=parser.normalize_count(row.get("number_of_arms")),
    )


def _outcome_to_wire(state: OutcomeState) -> dict[str, Any]:
    return {
        "purpose_of_trial": parser.to_nullable(state.purpose_of_trial),
        "summary": parser.to_nullable(state.summary),
        "primary_outcome_measure": parser.MEASURE_LIST.encode(
            state.primary_outcome_measures,
        ),
        "other_outcome_measure": parser.MEASURE_LIST.encode(state.other_outcome_measures),
        "study_design_keywords": parser.KEYWORD_LIST.encode(state.study_design_keywords),
        "study_design": parser.to_nullable(state.study_design),
        "treatment_regimen": parser.to_nullable(state.treatment_regimen),
        "number_of_arms": parser.count_to_int(state.number_of_arms),
    }


def _criteria_from_wire(payload: Any) -> CriteriaState:
    row = _as_row(payload, SectionKey.CRITERIA)
    age_min, age_min_unit = parser.parse_age(row.get("age_from"))
    age_max, age_max_unit = parser.parse_age(row.get("age_to"))
    return CriteriaState(
        inclusion_criteria=parser.CRITERIA_LIST.decode(row.get("inclusion_criteria")),
        exclusion_criteria=parser.CRITERIA_LIST.decode(row.get("exclusion_criteria")),
        age_min=age_min,
        age_min_unit=age_min_unit,
        age_max=age_max,
        age_max_unit=age_max_unit,
        sex=parser.to_text(row.get("sex")),
        healthy_volunteers=parser.to_text(row.get("healthy_volunteers")),
        subject_type=parser.to_text(row.get("subject_type")),
        target_no_volunteers=parser.normalize_count(row.get("target_no_volunteers")),
        actual_enrolled_volunteers=parser.normalize_count(
            row.get("actual_enrolled_volunteers"),
        ),
    )


def _criteria_to_wire(state: CriteriaState) -> dict[str, Any]:
    return {
        "inclusion_criteria": parser.CRITERIA_LIST.encode(state.inclusion_criteria),
        "exclusion_criteria": parser.CRITERIA_LIST.encode(state.exclusion_criteria),
        "age_from": parser.join_age(state.age_min, state.age_min_unit),
        "age_to": parser.join_age(state.age_max, state.age_max_unit),
        "sex": parser.to_nullable(state.sex),
        "healthy_volunteers": parser.to_nullable(state.healthy_volunteers),
        "subject_type": parser.to_nullable(state.subject_type),
        "target_no_volunteers": parser.to_nullable(
            parser.normalize_count(state.target_no_volunteers),
        ),
        "actual_enrolled_volunteers": parser.to_nullable(
            parser.normalize_count(state.actual_enrolled_volunteers),
        ),
    }


def _reference_from_wire(row: dict[str, Any], index: int) -> Reference:
    return Reference(
        id=_row_id(row, index),
        date=parser.normalize_date(row.get("date")),
        registry_type=parser.to_text(row.get("registryType") or row.get("sourceType")),
        content=parser.to_text(row.get("content")),
        view_source=parser.to_text(row.get("viewSource") or row.get("sourceLink")),
        attachments=parser.normalize_attachments(row.get("attachments")),
        is_visible=_is_visible(row),
    )


def _reference_to_wire(ref: Reference) -> dict[str, Any]:
    return {
        "id": ref.id,
        "date": parser.date_to_wire(ref.date) or "",
        "registryType": ref.registry_type,
        "content": ref.content,
        "viewSource": ref.view_source,
        "attachments": [a.model_dump() for a in ref.attachments],
        "isVisible": True,
    }


def _references_from_wire(value: Any, label: str) -> list[Reference]:
    rows = parser.parse_collection(value, label)
    refs = [_reference_from_wire(row, i) for i, row in enumerate(rows, start=1)]
    return _with_template(refs, Reference)


def _references_to_wire(refs: list[Reference]) -> list[dict[str, Any]]:
    return [_reference_to_wire(ref) for ref in refs if ref.is_persistable()]


def _timing_from_wire(payload: Any) -> TimingState:
    row = _as_row(payload, SectionKey.TIMING)
    data: dict[str, Any] = {
        name: parser.normalize_date(row.get(name)) for name in TIMING_DATE_FIELDS
    }
    data.update({name: parser.to_text(row.get(name)) for name in TIMING_TEXT_FIELDS})
    data["references"] = _references_from_wire(
        row.get("timing_references"), "timing_references",
    )
    return TimingState(**data)


def _timing_to_wire(state: TimingState) -> dict[str, Any]:
    wire: dict[str, Any] = {
        name: parser.date_to_wire(getattr(state, name)) for name in TIMING_DATE_FIELDS
    }
    wire.update(
        {name: parser.to_nullable(getattr(state, name)) for name in TIMING_TEXT_FIELDS},
    )
    wire["timing_references"] = _references_to_wire(state.references) or None
    return wire


def _site_note_from_wire(row: dict[str, Any], index: int) -> SiteNote:
    return SiteNote(
        id=_row_id(row, index),
        date=parser.normalize_date(row.get("date")),
        note_type=parser.to_text(row.get("noteType") or row.get("type")),
        content=_note_content(row.get("content")),
        source_link=parser.to_text(row.get("sourceLink")),
        source_type=parser.to_text(row.get("sourceType")),
        attachments=parser.normalize_attachments(row.get("attachments")),
        is_visible=_is_visible(row),
    )


def _results_from_wire(payload: Any) -> ResultsState:
    row = _as_row(payload, SectionKey.RESULTS)
    data: dict[str, Any] = {
        name: parser.to_text(row.get(name)) for name in RESULTS_TEXT_FIELDS
    }
    rows = parser.parse_collection(row.get("site_notes"), "site_notes")
    notes = [_site_note_from_wire(r, i) for i, r in enumerate(rows, start=1)]
    data.update(
        results_available=parser.parse_flag(row.get("results_available")),
        endpoints_met=parser.parse_flag(row.get("endpoints_met")),
        trial_outcome_reference_date=parser.normalize_date(row.get("reference")),
        trial_outcome_attachment=parser.normalize_attachment(
            row.get("trial_outcome_attachment"),
        ),
        trial_results=parser.MEASURE_LIST.decode(row.get("trial_results")),
        site_notes=_with_template(notes, SiteNote),
    )
    return ResultsState(**data)


def _results_to_wire(state: ResultsState) -> dict[str, Any]:
    wire: dict[str, Any] = {
        name: parser.to_nullable(getattr(state, name)) for name in RESULTS_TEXT_FIELDS
    }
    notes = [
        {
            "id": note.id,
            "date": parser.date_to_wire(note.date) or "",
            "type": note.note_type,
            "content": note.content,
            "sourceLink": note.source_link,
            "sourceType": note.source_type,
            "attachments": [a.model_dump() for a in note.attachments],
            "isVisible": True,
        }
        for note in state.site_notes
        if note.is_persistable()
    ]
    attachment = state.trial_outcome_attachment
    wire.update(
        results_available=parser.flag_to_wire(state.results_available),
        endpoints_met=parser.flag_to_wire(state.endpoints_met),
        reference=parser.date_to_wire(state.trial_outcome_reference_date),
        trial_outcome_attachment=(attachment.url or attachment.name) if attachment else None,
        trial_results=[r for r in state.trial_results if r.strip()] or None,
        site_notes=json.dumps(notes) if notes else None,
    )
    return wire


def _sites_from_wire(payload: Any) -> SitesState:
    row = _as_row(payload, SectionKey.SITES)
    return SitesState(
        total_sites=parser.normalize_count(row.get("total")),
        references=_references_from_wire(row.get("site_notes"), "site_notes"),
    )


def _sites_to_wire(state: SitesState) -> dict[str, Any]:
    refs = _references_to_wire(state.references)
    return {
        "total": parser.count_to_int(state.total_sites),
        "site_notes": json.dumps(refs) if refs else None,
    }


def _source_row(row: Any) -> tuple[str, dict[str, Any], str] | None:
    """Return (category, fields, row id) for one stored source row."""
    if not isinstance(row, dict):
        return None
    row_id = parser.to_text(row.get("id")).strip()

    data = row.get("data")
    if isinstance(data, str):
        data = parser.parse_json_value(data)
    if isinstance(data, dict) and data.get("type") in SOURCE_CATEGORIES:
        return data["type"], data, row_id
    if row.get("type") in SOURCE_CATEGORIES:
        return row["type"], row, row_id

    # Legacy local rows hold the item under its category key.
    for category in SOURCE_CATEGORIES:
        item = row.get(category)
        if isinstance(item, dict):
            item = dict(item)
            if category == "publications":
                item.setdefault("publicationType", item.get("type", ""))
            elif category == "associated_studies":
                item.setdefault("studyType", item.get("type", ""))
            return category, item, parser.to_text(item.get("id")).strip() or row_id
    return None


def _other_sources_from_wire(payload: Any) -> OtherSourcesState:
    if isinstance(payload, dict):
        payload = [payload]
    if isinstance(payload, str):
        payload = parser.parse_collection(payload, "other sources")
    if payload is None:
        payload = []
    if not isinstance(payload, list):
        logger.warning("Unexpected other sources payload type %s.", type(payload).__name__)
        payload = []
    rows = payload

    collected: dict[str, list[SubItem]] = {name: [] for name in SOURCE_CATEGORIES}
    for row in rows:
        parsed = _source_row(row)
        if parsed is None:
            logger.warning("Skipping unrecognized other source row: %.80s", row)
            continue
        category, fields, row_id = parsed
        model, mapping = SOURCE_CATEGORIES[category]
        values: dict[str, Any] = {
            "id": parser.to_text(fields.get("id")).strip()
            or row_id
            or str(len(collected[category]) + 1),
            "url": parser.to_text(fields.get("url")),
            "file": parser.to_text(fields.get("file")),
            "file_url": parser.to_text(fields.get("fileUrl")),
            "is_visible": _is_visible(fields),
        }
        for name, wire_key in mapping:
            value = fields.get(wire_key)
            values[name] = (
                parser.normalize_date(value) if name == "date" else parser.to_text(value)
            )
        collected[category].append(model(**values))

    return OtherSourcesState(
        **{
            category: _with_template(items, SOURCE_CATEGORIES[category][0])
            for category, items in collected.items()
        },
    )


def _other_sources_to_wire(state: OtherSourcesState) -> list[dict[str, Any]]:
    """Return one stored row body per surviving item, in category order."""
    rows = []
    for category, (_, mapping) in SOURCE_CATEGORIES.items():
        for item in getattr(state, category):
            if not item.is_persistable():
                continue
            body: dict[str, Any] = {"type": category, "id": item.id}
            for name, wire_key in mapping:
                value = getattr(item, name)
                if name == "date":
                    value = parser.date_to_wire(value) or ""
                body[wire_key] = value
            body.update(url=item.url, file=item.file, fileUrl=item.file_url)
            rows.append(body)
    return rows


def _notes_from_wire(payload: Any) -> NotesState:
    raw = payload
    if isinstance(payload, list):
        # Rows as stored by the notes endpoint, each holding a ``notes`` field.
        if payload and isinstance(payload[0], dict) and "notes" in payload[0]:
            raw = payload[0]["notes"]
    elif isinstance(payload, dict):
        raw = payload.get("notes") if "notes" in payload else payload

    if isinstance(raw, str):
        parsed = parser.parse_json_value(raw)
        if parsed is None:
            rows = parser.parse_legacy_notes(raw)
        else:
            rows = parser.parse_collection(parsed, "notes")
    else:
        rows = parser.parse_collection(raw, "notes")

    notes = [
        Note(
            id=_row_id(row, i),
            date=parser.normalize_date(row.get("date")),
            type=parser.to_text(row.get("type")).strip() or "General",
            content=_note_content(row.get("content")),
            source_link=parser.to_text(row.get("sourceLink") or row.get("sourceUrl")),
            source_type=parser.to_text(row.get("sourceType")),
            source_url=parser.to_text(row.get("sourceUrl")),
            attachments=parser.normalize_attachments(row.get("attachments")),
            is_visible=_is_visible(row),
        )
        for i, row in enumerate(rows, start=1)
    ]
    return NotesState(notes=_with_template(notes, Note))


def _notes_to_wire(state: NotesState) -> dict[str, Any]:
    return {
        "notes": [
            {
                "id": note.id,
                "date": parser.date_to_wire(note.date),
                "type": note.type or "General",
                "content": note.content,
                "sourceLink": note.source_link,
                "sourceType": note.source_type,
                "sourceUrl": note.source_url,
                "attachments": [a.model_dump() for a in note.attachments],
                "isVisible": True,
            }
            for note in state.notes
            if note.is_persistable()
        ],
    }


def _changes_from_wire(value: Any) -> list[ChangeLogEntry]:
    entries = []
    for row in parser.parse_collection(value, "changes_log"):
        try:
            entries.append(ChangeLogEntry.model_validate(row))
        except ValidationError as e:
            logger.warning("Dropping malformed change log entry: %s", e)
    return entries


def _logs_from_wire(payload: Any) -> LogsState:
    row = _as_row(payload, SectionKey.LOGS)
    return LogsState(
        full_review=parser.parse_flag(row.get("full_review")),
        full_review_user=parser.to_text(row.get("full_review_user")),
        next_review_date=parser.normalize_date(row.get("next_review_date")),
        internal_note=parser.to_text(row.get("internal_note")),
        attachments=parser.normalize_attachments(row.get("attachment")),
        last_modified_date=parser.to_text(row.get("last_modified_date")),
        last_modified_user=parser.to_text(row.get("last_modified_user")),
        changes_log=_changes_from_wire(row.get("changes_log")),
    )


def _logs_to_wire(state: LogsState) -> dict[str, Any]:
    attachments = [a.model_dump() for a in state.attachments if a.url or a.name]
    changes = [entry.model_dump(mode="json") for entry in state.changes_log]
    return {
        "full_review": state.full_review,
        "full_review_user": parser.to_nullable(state.full_review_user),
        "next_review_date": parser.date_to_wire(state.next_review_date),
        "internal_note": state.internal_note,
        "attachment": json.dumps(attachments) if attachments else None,
        "last_modified_date": parser.to_nullable(state.last_modified_date),
        "last_modified_user": parser.to_nullable(state.last_modified_user),
        "changes_log": json.dumps(changes) if changes else None,
    }


_FROM_WIRE: dict[SectionKey, Callable[[Any], BaseModel]] = {
    SectionKey.OUTCOME: _outcome_from_wire,
    SectionKey.CRITERIA: _criteria_from_wire,
    SectionKey.TIMING: _timing_from_wire,
    SectionKey.RESULTS: _results_from_wire,
    SectionKey.SITES: _sites_from_wire,
    SectionKey.OTHER_SOURCES: _other_sources_from_wire,
    SectionKey.NOTES: _notes_from_wire,
    SectionKey.LOGS: _logs_from_wire,
}

_TO_WIRE: dict[SectionKey, Callable[[Any], Any]] = {
    SectionKey.OVERVIEW: _overview_to_wire,
    SectionKey.OUTCOME: _outcome_to_wire,
    SectionKey.CRITERIA: _criteria_to_wire,
    SectionKey.TIMING: _timing_to_wire,
    SectionKey.RESULTS: _results_to_wire,
    SectionKey.SITES: _sites_to_wire,
    SectionKey.OTHER_SOURCES: _other_sources_to_wire,
    SectionKey.NOTES: _notes_to_wire,
    SectionKey.LOGS: _logs_to_wire,
}


def default_state(section_key: SectionKey) -> BaseModel:
    """Return the section's default template.

    List-bearing sections carry exactly one empty, visible sub-item per
    collection so an editor always has a row to fill in.
    """
    return SECTION_MODELS[SectionKey(section_key)]()


def from_wire(section_key: SectionKey, wire_payload: Any, *, trial_id: str = "") -> BaseModel:
    """Convert one section's wire payload into its normalized model.

    Args:
        section_key: The section the payload belongs to.
        wire_payload: The payload as stored remotely, as extracted by
            ``extract_section``, or as produced by ``to_wire``.
        trial_id: Identifier the record was requested by, used to derive the
            display identifier when the overview carries none.

    Returns:
        The normalized section state. Never raises for malformed data.
    """
    key = SectionKey(section_key)
    try:
        if key == SectionKey.OVERVIEW:
            return _overview_from_wire(wire_payload, trial_id)
        return _FROM_WIRE[key](wire_payload)
    except (ValidationError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Could not map section %s; using defaults: %s", key.value, e)
        return default_state(key)


def to_wire(section_key: SectionKey, state: BaseModel) -> Any:
    """Convert a normalized section model back into its wire payload.

    Invisible and empty sub-items are dropped from the result.
    """
    key = SectionKey(section_key)
    model = SECTION_MODELS[key]
    if not isinstance(state, model):
        try:
            state = model.model_validate(state)
        except ValidationError as e:
            logger.warning("Could not map section %s to wire; using defaults: %s", key.value, e)
            state = default_state(key)
    return _TO_WIRE[key](state)


def extract_section(record: dict[str, Any] | None, section_key: SectionKey) -> Any:
    """Pull one section's wire payload out of a full trial record."""
    if not isinstance(record, dict):
        return None
    key = SectionKey(section_key)
    if key == SectionKey.OTHER_SOURCES:
        rows = record.get("other")
        if not rows:
            rows = record.get("other_sources")
        return rows or []
    if key == SectionKey.NOTES:
        return record.get("notes")
    value = record.get(RECORD_KEYS[key])
    if value is None and key == SectionKey.OUTCOME:
        value = record.get("outcome")
    return _as_row(value, key)


def record_identifiers(record: dict[str, Any]) -> set[str]:
    """Return every identifier a record can be looked up by."""
    overview = record.get("overview")
    if isinstance(overview, list):
        overview = overview[0] if overview else {}
    if not isinstance(overview, dict):
        overview = {}
    candidates = (
        record.get("trial_id"),
        overview.get("id"),
        overview.get("trial_id"),
        record.get("id"),
    )
    return {parser.to_text(c).strip() for c in candidates if c not in (None, "")}


def select_record(payload: Any, trial_id: str) -> dict[str, Any] | None:
    """Pick the record for ``trial_id`` out of a single or bulk response.

    Accepts a bare record, ``{"data": record}``, ``{"trials": [...]}`` or a
    bare list. Only a record whose ``trial_id``, overview id or ``id`` equals
    ``trial_id`` is returned.
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("trials"), list):
            candidates = payload["trials"]
        elif isinstance(payload.get("data"), (dict, list)):
            data = payload["data"]
            candidates = data if isinstance(data, list) else [data]
        else:
            candidates = [payload]
    elif isinstance(payload, list):
        candidates = payload
    else:
        return None

    records = [c for c in candidates if isinstance(c, dict)]
    wanted = str(trial_id).strip()
    for record in records:
        if wanted in record_identifiers(record):
            return record
    return None


def identity_from_record(record: dict[str, Any] | None, trial_id: str) -> TrialIdentity:
    if not isinstance(record, dict):
        return TrialIdentity(trial_id=trial_id, db_trial_id=trial_id)
    overview = extract_section(record, SectionKey.OVERVIEW)
    overview_id = parser.to_text(overview.get("id")).strip() or None
    db_trial_id = (
        parser.to_text(record.get("trial_id")).strip() or overview_id or trial_id
    )
    return TrialIdentity(trial_id=trial_id, db_trial_id=db_trial_id, overview_id=overview_id)


def sections_from_record(
    record: dict[str, Any] | None, trial_id: str,
) -> dict[SectionKey, BaseModel]:
    """Map every section of a record, falling back to defaults when absent."""
    if not isinstance(record, dict):
        return {key: default_state(key) for key in SectionKey}
    return {
        key: from_wire(key, extract_section(record, key), trial_id=trial_id)
        for key in SectionKey
    }


def record_from_sections(
    sections: dict[SectionKey, BaseModel], identity: TrialIdentity,
) -> dict[str, Any]:
    """Assemble a full wire record, the inverse of ``sections_from_record``."""
    overview = to_wire(SectionKey.OVERVIEW, sections[SectionKey.OVERVIEW])
    if identity.overview_id:
        overview["id"] = identity.overview_id
    record: dict[str, Any] = {
        "trial_id": identity.db_trial_id or identity.trial_id,
        "overview": overview,
        "other": to_wire(SectionKey.OTHER_SOURCES, sections[SectionKey.OTHER_SOURCES]),
        "notes": to_wire(SectionKey.NOTES, sections[SectionKey.NOTES]),
    }
    for key in (
        SectionKey.OUTCOME,
        SectionKey.CRITERIA,
        SectionKey.TIMING,
        SectionKey.RESULTS,
        SectionKey.SITES,
        SectionKey.LOGS,
    ):
        record[RECORD_KEYS[key]] = [to_wire(key, sections[key])]
    return record

