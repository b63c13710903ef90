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
"""Builds audit entries for edits made during a session."""

import json
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from .drafts import utc_now
from .models import ChangeAction, ChangeLogEntry, SectionKey


def display_value(value: Any) -> str:
    """Render a value for a human-readable audit trail.

    Strings are kept as they are, None becomes an empty string and anything
    else is serialized as JSON.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, default=str, sort_keys=True)


def qualified_field(section_key: SectionKey, field: str, index: int | None = None) -> str:
    name = f"{SectionKey(section_key).value}.{field}"
    return name if index is None else f"{name}[{index}]"


class ChangeLogRecorder:
    """Creates ``ChangeLogEntry`` records for the session's actor."""

    def __init__(
        self, actor: str = "admin", clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.actor = actor
        self.clock = clock or utc_now

    def entry(
        self,
        action: ChangeAction,
        section_key: SectionKey,
        field: str,
        old_value: Any = None,
        new_value: Any = None,
        index: int | None = None,
    ) -> ChangeLogEntry:
        return ChangeLogEntry(
            id=uuid.uuid4().hex,
            timestamp=self.clock(),
            actor=self.actor,
            action=action,
            section_key=section_key,
            field=qualified_field(section_key, field, index),
            old_value=display_value(old_value),
            new_value=display_value(new_value),
        )
