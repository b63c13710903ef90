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

import json
import re
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from py_trial_drafts.client import RecordStoreClient
from py_trial_drafts.config import Settings
from py_trial_drafts.drafts import DraftStore
from py_trial_drafts.session import EditSession
from py_trial_drafts.store.memory import MemoryDraftBackend

API = "http://store.test/api"
FILES = "http://files.test"


class FakeClock:
    """A clock that advances one second every time it is read."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FakeRecordStore:
    """An in-memory stand-in for the remote record store.

    Records are kept in the store's wire shape. ``fail`` maps a path
    fragment to the status code returned for writes to it, and ``down``
    makes every request fail at the transport level.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail: dict[str, int] = {}
        self.down = False

    def add_trial(self, trial_id: str, overview_id: str = "ov-1", **sections) -> dict:
        record = {
            "trial_id": trial_id,
            "overview": {"id": overview_id, "trial_id": trial_id, "title": "A trial"},
            **sections,
        }
        self.records[trial_id] = record
        return record

    def paths(self, method: str | None = None) -> list[str]:
        return [
            f"{r.method} {r.url.path.removeprefix('/api/')}"
            for r in self.requests
            if method is None or r.method == method
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("store is down", request=request)
        path = request.url.path.removeprefix("/api/")
        if request.method != "GET":
            for fragment, status in self.fail.items():
                if fragment in path:
                    return httpx.Response(status, text=f"forced failure {status}")

        if request.method == "GET":
            return self._get(path)
        body = json.loads(request.content) if request.content else {}
        return self._write(request.method, path, body)

    def _get(self, path: str) -> httpx.Response:
        if path == "overview":
            return httpx.Response(200, json=[])
        if path == "trials/all-trials-with-data":
            return httpx.Response(200, json={"trials": list(self.records.values())})
        match = re.fullmatch(r"trials/(.+)", path)
        if match and match.group(1) in self.records:
            return httpx.Response(200, json=self.records[match.group(1)])
        return httpx.Response(404, json={"detail": "Not found"})

    def _record(self, trial_id: str) -> dict:
        return self.records.setdefault(trial_id, {"trial_id": trial_id})

    def _write(self, method: str, path: str, body: dict) -> httpx.Response:
        match = re.fullmatch(r"overview/(.+)/update", path)
        if match:
            for record in self.records.values():
                overview = record.get("overview") or {}
                if overview.get("id") == match.group(1):
                    record["overview"] = {**overview, **body, "id": match.group(1)}
                    return httpx.Response(200, json={"trial_id": record["trial_id"]})
            return httpx.Response(404, json={"detail": "Not found"})

        match = re.fullmatch(r"(\w+)/trial/(.+)/update", path)
        if match:
            key = "outcomes" if match.group(1) == "outcome" else match.group(1)
            self._record(match.group(2))[key] = [body]
            return httpx.Response(200, json=body)

        match = re.fullmatch(r"(other|notes)/trial/(.+)", path)
        if match and method == "DELETE":
            self._record(match.group(2))[match.group(1)] = []
            return httpx.Response(200, json={"deleted": True})

        if path == "other":
            rows = self._record(body["trial_id"]).setdefault("other", [])
            rows.append({"id": str(len(rows) + 1), **body})
            return httpx.Response(201, json=rows[-1])
        if path == "notes":
            self._record(body["trial_id"])["notes"] = [body]
            return httpx.Response(201, json=body)
        return httpx.Response(404, json={"detail": "Unknown endpoint"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        api_base_url=API,
        attachment_base_url=FILES,
        backoff_base=0,
        settle_delay=0,
        draft_backend="memory",
        draft_dir=tmp_path / "drafts",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def drafts(clock: FakeClock) -> DraftStore:
    return DraftStore(MemoryDraftBackend(), clock=clock)


@pytest.fixture
def fake_store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def record_client(settings: Settings, fake_store: FakeRecordStore) -> RecordStoreClient:
    transport = httpx.MockTransport(fake_store.handler)
    return RecordStoreClient(settings, client=httpx.AsyncClient(transport=transport))


@pytest.fixture
def session(
    settings: Settings, record_client: RecordStoreClient, drafts: DraftStore,
) -> EditSession:
    return EditSession(settings, record_client, drafts)
