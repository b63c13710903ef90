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
"""Provides an async client for the remote trial record store."""

import asyncio
import logging
import random
import types
from typing import Any

import httpx

from .config import Settings
from .mapper import select_record
from .models import SectionKey

logger = logging.getLogger(__name__)

USER_AGENT = "py-trial-drafts/0.1.0"

# Path segment of each section's endpoints.
SECTION_SEGMENTS = {
    SectionKey.OUTCOME: "outcome",
    SectionKey.CRITERIA: "criteria",
    SectionKey.TIMING: "timing",
    SectionKey.RESULTS: "results",
    SectionKey.SITES: "sites",
    SectionKey.LOGS: "logs",
    SectionKey.OTHER_SOURCES: "other",
    SectionKey.NOTES: "notes",
}


class RetryingClient:
    """Wraps an ``httpx.AsyncClient`` with a bounded retry loop.

    Transport errors and 5xx responses are retried with exponential backoff
    and jitter; any other response is returned to the caller as is.
    """

    def __init__(
        self,
        settings: Settings,
        base_url: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=settings.request_timeout,
        )

    async def __aenter__(self) -> "RetryingClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float | None = None,
        attempts: int | None = None,
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Send a request, retrying transient failures.

        Returns:
            The first non-5xx response, the last 5xx response if every
            attempt failed that way, or None if no response was received.
        """
        url = self.url(path)
        attempts = max(1, attempts or self.settings.max_retries)
        timeout = timeout or self.settings.request_timeout
        last_response = None

        for attempt in range(attempts):
            try:
                response = await self.client.request(method, url, timeout=timeout, **kwargs)
                if response.status_code < 500:
                    return response
                last_response = response
                logger.warning(
                    "Attempt %d of %d for %s %s returned HTTP %d.",
                    attempt + 1,
                    attempts,
                    method,
                    url,
                    response.status_code,
                )
            except httpx.RequestError as e:
                logger.warning(
                    "Attempt %d of %d for %s %s failed: %s",
                    attempt + 1,
                    attempts,
                    method,
                    url,
                    e,
                )

            if attempt < attempts - 1:
                # Exponential backoff with jitter
                backoff_time = self.settings.backoff_base * (
                    (2**attempt) + random.uniform(0, 1)
                )
                await asyncio.sleep(backoff_time)

        logger.error("All retries for %s %s failed.", method, url)
        return last_response


class RecordStoreClient(RetryingClient):
    """Client for the section endpoints of the remote trial record store."""

    BULK_PATH = "trials/all-trials-with-data"

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, settings.api_base_url, client)

    async def probe(self) -> bool:
        """Check that the store is reachable, using the short probe timeout."""
        response = await self._request(
            "GET", "overview", timeout=self.settings.probe_timeout, attempts=1,
        )
        if response is None or not response.is_success:
            logger.warning("Record store probe failed; it is treated as unreachable.")
            return False
        return True

    async def _get_json(self, path: str) -> Any | None:
        response = await self._request("GET", path)
        if response is None or not response.is_success:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Response from %s is not valid JSON.", self.url(path))
            return None

    async def fetch_trial(self, trial_id: str) -> dict[str, Any] | None:
        """Fetch the full record of one trial.

        The single-record endpoint is tried first; if it yields nothing usable
        the bulk endpoint is searched for a record matching ``trial_id`` on
        any of its identifier fields.
        """
        payload = await self._get_json(f"trials/{trial_id}")
        record = select_record(payload, trial_id)
        if record is not None:
            return record

        payload = await self._get_json(self.BULK_PATH)
        record = select_record(payload, trial_id)
        if record is None:
            logger.info("Trial %s was not found in the record store.", trial_id)
        return record

    async def update_overview(
        self, overview_id: str, body: dict[str, Any],
    ) -> httpx.Response | None:
        return await self._request("POST", f"overview/{overview_id}/update", json=body)

    async def update_section(
        self, section_key: SectionKey, trial_id: str, body: dict[str, Any],
    ) -> httpx.Response | None:
        segment = SECTION_SEGMENTS[section_key]
        return await self._request("POST", f"{segment}/trial/{trial_id}/update", json=body)

    async def delete_collection(
        self, section_key: SectionKey, trial_id: str,
    ) -> httpx.Response | None:
        segment = SECTION_SEGMENTS[section_key]
        return await self._request("DELETE", f"{segment}/trial/{trial_id}")

    async def create_item(
        self, section_key: SectionKey, body: dict[str, Any],
    ) -> httpx.Response | None:
        return await self._request("POST", SECTION_SEGMENTS[section_key], json=body)
