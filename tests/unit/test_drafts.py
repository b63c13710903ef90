from datetime import datetime, timedelta, timezone

import pytest

from py_trial_drafts.drafts import DraftStore
from py_trial_drafts.models import SectionKey, TimingState
from py_trial_drafts.store.memory import MemoryDraftBackend

pytestmark = pytest.mark.unit


class BrokenBackend(MemoryDraftBackend):
    def get(self, key):
        raise OSError("disk unavailable")

    def set(self, key, value):
        raise OSError("disk full")

    def keys(self, prefix=""):
        raise OSError("disk unavailable")


def test_write_and_read(drafts: DraftStore):
    entry = drafts.write("T-1", SectionKey.TIMING, TimingState(start_date_actual="02-01-2024"))

    stored = drafts.read("T-1", SectionKey.TIMING)
    assert stored == entry
    assert stored.payload["start_date_actual"] == "02-01-2024"
    assert stored.written_at.tzinfo is not None
    assert drafts.backend.keys() == ["draft:timing:T-1"]


def test_drafts_are_keyed_by_trial_and_section(drafts: DraftStore):
    drafts.write("T-1", SectionKey.TIMING, {"a": 1})
    drafts.write("T-2", SectionKey.TIMING, {"a": 2})
    drafts.write("T-1", SectionKey.NOTES, {"a": 3})

    assert drafts.read("T-2", SectionKey.TIMING).payload == {"a": 2}
    assert set(drafts.drafts("T-1")) == {SectionKey.TIMING, SectionKey.NOTES}
    assert drafts.trial_ids() == ["T-1", "T-2"]


def test_write_stamp_never_goes_backwards(drafts: DraftStore, clock):
    future = clock.now + timedelta(hours=1)
    drafts.write("T-1", SectionKey.TIMING, {"a": 1}, written_at=future)
    entry = drafts.write("T-1", SectionKey.TIMING, {"a": 2})

    assert entry.written_at == future
    assert entry.payload == {"a": 2}


def test_clear_all_keeps_commit_marker(drafts: DraftStore):
    drafts.write("T-1", SectionKey.TIMING, {})
    drafts.write("T-1", SectionKey.LOGS, {})
    drafts.write_marker("T-1")

    drafts.clear_all("T-1")

    assert drafts.drafts("T-1") == {}
    assert drafts.read_marker("T-1") is not None


def test_marker_round_trip(drafts: DraftStore):
    committed = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
    drafts.write_marker("T-1", committed_at=committed)

    assert drafts.read_marker("T-1").committed_at == committed
    assert drafts.read_marker("T-2") is None


def test_snapshot_and_local_save(drafts: DraftStore):
    drafts.write_snapshot("T-1", {"trial_id": "T-1", "overview": {"id": "ov"}})
    stamp = drafts.mark_local_save("T-1")

    assert drafts.read_snapshot("T-1") == {"trial_id": "T-1", "overview": {"id": "ov"}}
    assert drafts.read_local_save("T-1") == stamp
    assert drafts.read_snapshot("T-2") is None


def test_corrupt_values_read_as_absent(drafts: DraftStore, caplog):
    drafts.backend.set("draft:timing:T-1", "{not json")
    drafts.backend.set("commit-marker:T-1", '{"trial_id": "T-1"}')

    assert drafts.read("T-1", SectionKey.TIMING) is None
    assert drafts.read_marker("T-1") is None
    assert "Discarding corrupt draft storage value" in caplog.text


def test_backend_failures_are_swallowed(caplog):
    drafts = DraftStore(BrokenBackend())

    assert drafts.write("T-1", SectionKey.TIMING, {"a": 1}) is None
    assert drafts.read("T-1", SectionKey.TIMING) is None
    assert drafts.trial_ids() == []
    assert "Draft storage write failed" in caplog.text
    assert "Draft storage read failed" in caplog.text
