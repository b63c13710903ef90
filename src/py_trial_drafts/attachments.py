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
"""Provides a client for the external file-attachment store."""

import logging
from enum import Enum

import httpx

from .client import RetryingClient
from .config import Settings
from .models import Attachment
from .parser import normalize_attachment

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("404", "not found", "does not exist", "no such key", "file not found")
SERVER_ERROR_MARKERS = ("internal server error", "500", "server error")


class DeleteOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    OTHER = "other"

    @property
    def resolved(self) -> bool:
        """Whether the attachment can be considered gone."""
        return self is not DeleteOutcome.OTHER


class AttachmentUploadError(RuntimeError):
    """Raised when the attachment store does not accept an upload."""


def classify_delete_error(error: BaseException | str) -> DeleteOutcome:
    """Classify a failed delete by the content of its error message."""
    message = str(error).lower()
    if any(marker in message for marker in NOT_FOUND_MARKERS):
        return DeleteOutcome.NOT_FOUND
    if any(marker in message for marker in SERVER_ERROR_MARKERS):
        return DeleteOutcome.SERVER_ERROR
    return DeleteOutcome.OTHER


class AttachmentStoreClient(RetryingClient):
    """Uploads and deletes files held by the attachment store."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, settings.attachment_base_url, client)

    async def upload(
        self,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> Attachment:
        response = await self._request(
            "POST", "upload", files={"file": (filename, content, content_type)},
        )
        if response is None or not response.is_success:
            status = response.status_code if response is not None else "no response"
            msg = f"Upload of {filename} failed ({status})."
            raise AttachmentUploadError(msg)

        try:
            body = response.json()
        except ValueError as e:
            msg = f"Upload of {filename} returned an unreadable response."
            raise AttachmentUploadError(msg) from e
        attachment = normalize_attachment(body)
        if attachment is None or not attachment.url:
            msg = f"Upload of {filename} returned no file URL."
            raise AttachmentUploadError(msg)
        return Attachment(name=filename, url=attachment.url, type=content_type)

    async def delete(self, url: str) -> DeleteOutcome:
        """Delete a stored file and classify the result."""
        response = await self._request("POST", "delete", json={"url": url})
        if response is None:
            return DeleteOutcome.OTHER
        if response.is_success:
            return DeleteOutcome.OK
        if response.status_code == 404:
            return DeleteOutcome.NOT_FOUND
        if response.status_code >= 500:
            return DeleteOutcome.SERVER_ERROR
        return classify_delete_error(f"{response.status_code} {response.text}")
