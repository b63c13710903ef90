import json

import pytest

from py_trial_drafts import mapper
from py_trial_drafts.models import (
    Attachment,
    Note,
    OverviewState,
    Reference,
    SectionKey,
    TimingState,
    TrialIdentity,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def wire_record():
    """A trial record as returned by the remote store."""
    return {
        "trial_id": "db-7",
        "overview": {
            "id": "ov-7",
            "trial_id": "db-7",
            "title": "Phase 2 study of Drug A",
            "therapeutic_area": '["Oncology", "Hematology"]',
            "trial_identifier": ["NCT0001"],
            "primary_drugs": "Drug A, low dose|||Drug C",
            "other_drugs": "Drug D, Drug E",
            "countries": "USA,Canada",
            "trial_phase": "II",
        },
        "outcomes": [
            {
                "purpose_of_trial": "Efficacy",
                "primary_outcome_measure": "Overall survival, 5 years|||Response rate",
                "other_outcome_measure": "Quality of life",
                "study_design_keywords": "Randomized, Open label",
                "number_of_arms": "2",
            },
        ],
        "criteria": [
            {
                "inclusion_criteria": "Age > 18; ECOG 0-1",
                "age_from": "18 Years",
                "age_to": "75,years",
                "target_no_volunteers": "1,200",
            },
        ],
        "timing": [
            {
                "start_date_actual": "2024-02-01",
                "trial_end_date_estimated": "2026-12-31",
                "inclusion_period_actual": "14 months",
                "timing_references": json.dumps(
                    [
                        {"id": "r1", "date": "2024-02-01", "content": "First patient in"},
                        {"id": "r2", "content": "Hidden", "isVisible": False},
                    ],
                ),
            },
        ],
        "results": [
            {
                "results_available": "Yes",
                "endpoints_met": "No",
                "trial_outcome": "Completed",
                "reference": "2025-06-01",
                "trial_outcome_attachment": "https://files.test/outcome.pdf",
                "trial_results": ["ORR 40%"],
                "site_notes": [{"id": "n1", "content": "Interim analysis", "type": "Update"}],
            },
        ],
        "sites": [
            {
                "total": 12,
                "site_notes": [{"id": "s1", "content": "Sites in EU", "date": "2024-05-01"}],
            },
        ],
        "other": [
            {
                "id": "101",
                "trial_id": "db-7",
                "data": json.dumps(
                    {"type": "press_releases", "title": "Launch", "date": "2024-03-03"},
                ),
            },
            {
                "id": "102",
                "trial_id": "db-7",
                "data": json.dumps(
                    {"type": "publications", "publicationType": "Abstract", "title": "ASCO"},
                ),
            },
        ],
        "notes": [
            {
                "trial_id": "db-7",
                "notes": [
                    {"id": "1", "date": "2024-04-01", "type": "Update", "content": "Amended"},
                ],
            },
        ],
        "logs": [
            {
                "full_review": True,
                "internal_note": "Checked",
                "next_review_date": "2025-09-01",
                "changes_log": json.dumps(
                    [
                        {
                            "id": "c1",
                            "timestamp": "2025-01-01T00:00:00+00:00",
                            "actor": "admin",
                            "action": "changed",
                            "section_key": "timing",
                            "field": "timing.start_date_actual",
                            "old_value": "",
                            "new_value": "02-01-2024",
                        },
                    ],
                ),
            },
        ],
    }


def test_overview_from_wire(wire_record):
    overview = mapper.from_wire(SectionKey.OVERVIEW, wire_record["overview"], trial_id="db-7")

    assert overview.therapeutic_area == ["Oncology", "Hematology"]
    assert overview.primary_drugs == ["Drug A, low dose", "Drug C"]
    assert overview.other_drugs == ["Drug D", "Drug E"]
    assert overview.countries == ["USA", "Canada"]
    # The generated display identifier is always first.
    assert overview.trial_identifier[0].startswith("TB-")
    assert overview.trial_identifier[1:] == ["NCT0001"]


def test_existing_display_identifier_is_kept():
    overview = mapper.from_wire(
        SectionKey.OVERVIEW, {"id": "x", "trial_identifier": ["NCT1", "TB-000171"]},
    )
    assert overview.trial_identifier == ["TB-000171", "NCT1"]


def test_drug_list_with_reserved_delimiter():
    overview = mapper.from_wire(
        SectionKey.OVERVIEW, {"other_drugs": "Drug A, BMS|||Drug B"},
    )
    assert overview.other_drugs == ["Drug A, BMS", "Drug B"]


def test_drug_list_with_plain_join_is_ambiguous():
    """A plain ", " join cannot tell names containing ", " apart."""
    overview = mapper.from_wire(SectionKey.OVERVIEW, {"other_drugs": "Drug A, BMS, Drug B"})
    assert overview.other_drugs == ["Drug A", "BMS", "Drug B"]


def test_drug_names_with_delimiter_survive_a_save():
    state = OverviewState(other_drugs=["Drug A, BMS"])
    wire = mapper.to_wire(SectionKey.OVERVIEW, state)

    assert mapper.from_wire(SectionKey.OVERVIEW, wire).other_drugs == ["Drug A, BMS"]


def test_timing_dates_are_normalized(wire_record):
    timing = mapper.from_wire(SectionKey.TIMING, mapper.extract_section(wire_record, "timing"))

    assert timing.start_date_actual == "02-01-2024"
    assert timing.trial_end_date_estimated == "12-31-2026"
    assert timing.inclusion_period_actual == "14 months"
    assert [ref.id for ref in timing.references] == ["r1", "r2"]
    assert timing.references[0].date == "02-01-2024"
    assert not timing.references[1].is_visible

    wire = mapper.to_wire(SectionKey.TIMING, timing)
    assert wire["start_date_actual"] == "2024-02-01"
    assert wire["start_date_benchmark"] is None


def test_invisible_items_are_not_sent(wire_record):
    timing = mapper.from_wire(SectionKey.TIMING, mapper.extract_section(wire_record, "timing"))
    wire = mapper.to_wire(SectionKey.TIMING, timing)

    assert [ref["id"] for ref in wire["timing_references"]] == ["r1"]


def test_empty_template_items_are_not_sent():
    wire = mapper.to_wire(SectionKey.TIMING, TimingState())
    assert wire["timing_references"] is None
    assert mapper.to_wire(SectionKey.NOTES, mapper.default_state(SectionKey.NOTES)) == {
        "notes": [],
    }
    assert mapper.to_wire(
        SectionKey.OTHER_SOURCES, mapper.default_state(SectionKey.OTHER_SOURCES),
    ) == []


def test_criteria_from_wire(wire_record):
    criteria = mapper.from_wire(
        SectionKey.CRITERIA, mapper.extract_section(wire_record, SectionKey.CRITERIA),
    )
    assert criteria.inclusion_criteria == ["Age > 18", "ECOG 0-1"]
    assert (criteria.age_min, criteria.age_min_unit) == ("18", "Years")
    assert (criteria.age_max, criteria.age_max_unit) == ("75", "Years")
    assert criteria.target_no_volunteers == "1200"

    wire = mapper.to_wire(SectionKey.CRITERIA, criteria)
    assert wire["age_to"] == "75 Years"
    assert wire["exclusion_criteria"] is None


def test_results_from_wire(wire_record):
    results = mapper.from_wire(
        SectionKey.RESULTS, mapper.extract_section(wire_record, SectionKey.RESULTS),
    )
    assert results.results_available is True
    assert results.endpoints_met is False
    assert results.trial_outcome_reference_date == "06-01-2025"
    assert results.trial_outcome_attachment == Attachment(
        name="outcome.pdf", url="https://files.test/outcome.pdf",
    )
    assert results.site_notes[0].note_type == "Update"

    wire = mapper.to_wire(SectionKey.RESULTS, results)
    assert wire["results_available"] == "Yes"
    assert json.loads(wire["site_notes"])[0]["content"] == "Interim analysis"


def test_sites_from_wire(wire_record):
    sites = mapper.from_wire(SectionKey.SITES, mapper.extract_section(wire_record, "sites"))
    assert sites.total_sites == "12"
    assert sites.references[0].content == "Sites in EU"
    assert mapper.to_wire(SectionKey.SITES, sites)["total"] == 12


def test_other_sources_from_wire(wire_record):
    other = mapper.from_wire(
        SectionKey.OTHER_SOURCES, mapper.extract_section(wire_record, "other_sources"),
    )
    assert other.press_releases[0].title == "Launch"
    assert other.press_releases[0].date == "03-03-2024"
    assert other.press_releases[0].id == "101"
    assert other.publications[0].publication_type == "Abstract"
    # Categories without rows keep their template row.
    assert len(other.pipeline_data) == 1
    assert not other.pipeline_data[0].has_content()

    rows = mapper.to_wire(SectionKey.OTHER_SOURCES, other)
    assert [row["type"] for row in rows] == ["press_releases", "publications"]
    assert rows[0]["date"] == "2024-03-03"


def test_legacy_other_sources_rows():
    other = mapper.from_wire(
        SectionKey.OTHER_SOURCES,
        [{"associated_studies": {"id": "9", "type": "Extension", "title": "OLE"}}],
    )
    assert other.associated_studies[0].study_type == "Extension"
    assert other.associated_studies[0].id == "9"


def test_notes_from_wire(wire_record):
    notes = mapper.from_wire(SectionKey.NOTES, mapper.extract_section(wire_record, "notes"))
    assert notes.notes[0].content == "Amended"
    assert notes.notes[0].date == "04-01-2024"


def test_legacy_notes_string():
    notes = mapper.from_wire(
        SectionKey.NOTES, "2024-01-05 (Update): Paused - Source: https://example.org",
    )
    assert notes.notes[0] == Note(
        id="1",
        date="01-05-2024",
        type="Update",
        content="Paused",
        source_link="https://example.org",
    )


def test_logs_from_wire(wire_record):
    logs = mapper.from_wire(SectionKey.LOGS, mapper.extract_section(wire_record, "logs"))
    assert logs.full_review is True
    assert logs.next_review_date == "09-01-2025"
    assert logs.changes_log[0].field == "timing.start_date_actual"

    wire = mapper.to_wire(SectionKey.LOGS, logs)
    assert json.loads(wire["changes_log"])[0]["id"] == "c1"
    assert wire["attachment"] is None


@pytest.mark.parametrize("section_key", list(SectionKey))
def test_round_trip_is_idempotent(wire_record, section_key):
    """Mapping a section out and back in again changes nothing."""
    first = mapper.from_wire(
        section_key, mapper.extract_section(wire_record, section_key), trial_id="db-7",
    )
    second = mapper.from_wire(
        section_key, mapper.to_wire(section_key, first), trial_id="db-7",
    )
    # Invisible items are not sent.
    if section_key == SectionKey.TIMING:
        first.references = [ref for ref in first.references if ref.is_visible]
    assert second == first


@pytest.mark.parametrize("payload", [None, "garbage", 42, [], {"unrelated": 1}])
def test_malformed_payload_yields_defaults(payload):
    timing = mapper.from_wire(SectionKey.TIMING, payload)
    assert timing == TimingState()
    assert timing.references == [Reference()]


def test_unsupported_attachment_shape_is_dropped():
    results = mapper.from_wire(SectionKey.RESULTS, {"trial_outcome_attachment": 3.5})
    assert results.trial_outcome_attachment is None


@pytest.mark.parametrize(
    "section_key, state",
    [
        (SectionKey.CRITERIA, {"sex": ["not", "text"]}),
        (SectionKey.TIMING, {"references": "bad"}),
    ],
)
def test_invalid_state_maps_defaults_to_wire(section_key, state, caplog):
    expected = mapper.to_wire(section_key, mapper.default_state(section_key))

    assert mapper.to_wire(section_key, state) == expected
    assert "using defaults" in caplog.text


def test_select_record_from_bulk_response(wire_record):
    other = {"trial_id": "db-8", "overview": {"id": "ov-8"}}
    payload = {"trials": [other, wire_record]}

    assert mapper.select_record(payload, "ov-7") is wire_record
    assert mapper.select_record(payload, "db-7") is wire_record
    assert mapper.select_record(payload, "missing") is None


def test_select_record_single_response(wire_record):
    assert mapper.select_record({"data": wire_record}, "db-7") is wire_record
    assert mapper.select_record(wire_record, "other-id") is None
    assert mapper.select_record({"success": False, "data": None}, "db-7") is None
    assert mapper.select_record("nonsense", "db-7") is None


def test_identity_from_record(wire_record):
    assert mapper.identity_from_record(wire_record, "ov-7") == TrialIdentity(
        trial_id="ov-7", db_trial_id="db-7", overview_id="ov-7",
    )
    assert mapper.identity_from_record(None, "T-1") == TrialIdentity(
        trial_id="T-1", db_trial_id="T-1",
    )


def test_empty_record_yields_default_templates():
    sections = mapper.sections_from_record(None, "T-1")
    assert set(sections) == set(SectionKey)
    assert len(sections[SectionKey.NOTES].notes) == 1
    assert sections[SectionKey.LOGS].changes_log == []


def test_record_from_sections_round_trip(wire_record):
    sections = mapper.sections_from_record(wire_record, "db-7")
    identity = mapper.identity_from_record(wire_record, "db-7")
    rebuilt = mapper.record_from_sections(sections, identity)

    assert rebuilt["overview"]["id"] == "ov-7"
    assert rebuilt["trial_id"] == "db-7"
    restored = mapper.sections_from_record(rebuilt, "db-7")
    for key in SectionKey:
        if key != SectionKey.TIMING:
            assert restored[key] == sections[key]
    assert [ref.id for ref in restored[SectionKey.TIMING].references] == ["r1"]
