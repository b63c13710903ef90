import pytest

from py_trial_drafts import parser
from py_trial_drafts.models import Attachment

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-03-01", "03-01-2024"),
        ("03-01-2024", "03-01-2024"),
        ("2024-03-01T10:30:00Z", "03-01-2024"),
        ("1 Mar 2024", "03-01-2024"),
        ("March 1, 2024", "03-01-2024"),
        ("", ""),
        (None, ""),
        ("not a date", ""),
    ],
)
def test_normalize_date(raw, expected):
    assert parser.normalize_date(raw) == expected


def test_date_to_wire():
    assert parser.date_to_wire("03-01-2024") == "2024-03-01"
    assert parser.date_to_wire("") is None


def test_unparseable_date_is_logged(caplog):
    assert parser.normalize_date("31-31-2024") == ""
    assert "Unparseable date value" in caplog.text


def test_generic_list_reads_every_shape():
    """Lists arrive as arrays, JSON strings, comma strings or label objects."""
    assert parser.GENERIC_LIST.decode(["Oncology", " Rare "]) == ["Oncology", "Rare"]
    assert parser.GENERIC_LIST.decode('["Oncology", "Rare"]') == ["Oncology", "Rare"]
    assert parser.GENERIC_LIST.decode("Oncology,Rare, Other") == ["Oncology", "Rare", "Other"]
    assert parser.GENERIC_LIST.decode([{"label": "Oncology"}, {"value": "Rare"}]) == [
        "Oncology",
        "Rare",
    ]
    assert parser.GENERIC_LIST.decode(None) == []
    assert parser.GENERIC_LIST.decode("") == []


def test_item_containing_delimiter_uses_reserved_join():
    items = ["Ipilimumab, low dose", "Nivolumab"]
    encoded = parser.DRUG_LIST.encode(items)

    assert encoded == "Ipilimumab, low dose|||Nivolumab"
    assert parser.DRUG_LIST.decode(encoded) == items


def test_plain_drug_join_splits_on_comma_space():
    assert parser.DRUG_LIST.decode("Drug A, Drug B") == ["Drug A", "Drug B"]
    assert parser.DRUG_LIST.encode(["Drug A", "Drug B"]) == "Drug A, Drug B"


def test_measure_list_is_always_reserved():
    measures = ["Overall survival, at 5 years", "Progression-free survival"]
    encoded = parser.MEASURE_LIST.encode(measures)

    assert encoded == "Overall survival, at 5 years|||Progression-free survival"
    assert parser.MEASURE_LIST.decode(encoded) == measures
    # Legacy single values are never split on commas.
    assert parser.MEASURE_LIST.decode("Response rate, week 12") == ["Response rate, week 12"]


def test_criteria_list():
    assert parser.CRITERIA_LIST.decode("Age > 18; ECOG 0-1") == ["Age > 18", "ECOG 0-1"]
    assert parser.CRITERIA_LIST.encode(["Age > 18", "ECOG 0-1"]) == "Age > 18; ECOG 0-1"
    assert parser.CRITERIA_LIST.encode([]) is None


@pytest.mark.parametrize(
    "raw, expected",
    [("1,250", "1250"), (42, "42"), ("abc", ""), (None, ""), ("nan", ""), (True, "")],
)
def test_normalize_count(raw, expected):
    assert parser.normalize_count(raw) == expected


def test_count_to_int():
    assert parser.count_to_int("1,250") == 1250
    assert parser.count_to_int("") is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("18 Years", ("18", "Years")),
        ("10,months", ("10", "Months")),
        ("65", ("65", "Years")),
        ("null", ("", "Years")),
        (None, ("", "Years")),
    ],
)
def test_parse_age(raw, expected):
    assert parser.parse_age(raw) == expected


def test_join_age():
    assert parser.join_age("18", "Years") == "18 Years"
    assert parser.join_age("", "Years") is None


def test_flags():
    assert parser.parse_flag("Yes") is True
    assert parser.parse_flag("no") is False
    assert parser.parse_flag(True) is True
    assert parser.flag_to_wire(True) == "Yes"
    assert parser.flag_to_wire(False) == "No"


def test_normalize_attachment_from_url():
    attachment = parser.normalize_attachment("https://files.test/a/report%20v2.pdf")
    assert attachment == Attachment(
        name="report v2.pdf", url="https://files.test/a/report%20v2.pdf",
    )


def test_normalize_attachment_from_object_and_json():
    expected = Attachment(name="scan.png", url="https://files.test/scan.png", type="image/png")
    raw = {"fileUrl": "https://files.test/scan.png", "name": "scan.png", "type": "image/png"}

    assert parser.normalize_attachment(raw) == expected
    assert parser.normalize_attachment(
        '{"href": "https://files.test/scan.png", "name": "scan.png", "type": "image/png"}',
    ) == expected


def test_normalize_attachment_from_bare_filename():
    assert parser.normalize_attachment("protocol.docx") == Attachment(name="protocol.docx")
    assert parser.normalize_attachment("") is None
    assert parser.normalize_attachment({}) is None


def test_normalize_attachments_skips_unusable_entries():
    attachments = parser.normalize_attachments(
        '[{"url": "https://files.test/a.pdf"}, null, {}]',
    )
    assert [a.url for a in attachments] == ["https://files.test/a.pdf"]


def test_parse_collection(caplog):
    assert parser.parse_collection('[{"id": "1"}]', "notes") == [{"id": "1"}]
    assert parser.parse_collection({"id": "1"}, "notes") == [{"id": "1"}]
    assert parser.parse_collection([{"id": "1"}, "junk"], "notes") == [{"id": "1"}]
    assert parser.parse_collection("not json", "notes") == []
    assert "Could not decode notes collection" in caplog.text


def test_parse_legacy_notes():
    text = (
        "2024-01-05 (Update): Enrollment paused - Source: https://example.org/a; "
        "free text without header"
    )
    notes = parser.parse_legacy_notes(text)

    assert notes[0] == {
        "id": "1",
        "date": "2024-01-05",
        "type": "Update",
        "content": "Enrollment paused",
        "sourceLink": "https://example.org/a",
    }
    assert notes[1] == {"id": "2", "type": "General", "content": "free text without header"}
    assert parser.parse_legacy_notes("No notes available") == []


def test_auto_identifier_is_stable():
    assert parser.auto_identifier("abc") == "TB-096354"
    assert parser.auto_identifier("abc") == parser.auto_identifier("abc")
    assert parser.auto_identifier("") == "TB-000000"
