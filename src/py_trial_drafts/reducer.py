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
"""Defines the edit actions and the pure reducer that applies them."""

from typing import Any, Union

from pydantic import BaseModel, ValidationError

from .models import SECTION_MODELS, ChangeLogEntry, SectionKey, TrialState


class InvalidMutationError(ValueError):
    """Raised when an action names an unknown field or carries a bad value."""


class SetTrialData(BaseModel):
    state: TrialState


class UpdateField(BaseModel):
    section_key: SectionKey
    field: str
    value: Any = None


class AddArrayItem(BaseModel):
    section_key: SectionKey
    field: str
    value: Any = None


class RemoveArrayItem(BaseModel):
    section_key: SectionKey
    field: str
    index: int


class UpdateArrayItem(BaseModel):
    section_key: SectionKey
    field: str
    index: int
    value: Any = None


class ToggleVisibility(BaseModel):
    section_key: SectionKey
    field: str
    index: int


class AppendChangeLog(BaseModel):
    entry: ChangeLogEntry


class ResetForm(BaseModel):
    pass


Action = Union[
    SetTrialData,
    UpdateField,
    AddArrayItem,
    RemoveArrayItem,
    UpdateArrayItem,
    ToggleVisibility,
    AppendChangeLog,
    ResetForm,
]

FIELD_ACTIONS = (UpdateField, AddArrayItem, RemoveArrayItem, UpdateArrayItem, ToggleVisibility)

# Fields only ever changed through their own action.
APPEND_ONLY_FIELDS = {(SectionKey.LOGS, "changes_log")}


def _section_data(state: TrialState, section_key: SectionKey, field: str) -> dict[str, Any]:
    model = SECTION_MODELS[section_key]
    if field not in model.model_fields:
        msg = f"Section '{section_key.value}' has no field '{field}'."
        raise InvalidMutationError(msg)
    if (section_key, field) in APPEND_ONLY_FIELDS:
        msg = f"'{section_key.value}.{field}' is append-only; use AppendChangeLog."
        raise InvalidMutationError(msg)
    return state.section(section_key).model_dump()


def _list_value(data: dict[str, Any], action: BaseModel) -> list[Any]:
    value = data[action.field]
    if not isinstance(value, list):
        msg = f"Field '{action.section_key.value}.{action.field}' is not a list."
        raise InvalidMutationError(msg)
    index = getattr(action, "index", None)
    if index is not None and not 0 <= index < len(value):
        msg = (
            f"Index {index} is out of range for "
            f"'{action.section_key.value}.{action.field}' (length {len(value)})."
        )
        raise InvalidMutationError(msg)
    return list(value)


def _apply_field_action(state: TrialState, action: BaseModel) -> TrialState:
    section_key = action.section_key
    data = _section_data(state, section_key, action.field)

    if isinstance(action, UpdateField):
        data[action.field] = action.value
    else:
        items = _list_value(data, action)
        if isinstance(action, AddArrayItem):
            items.append(action.value)
        elif isinstance(action, RemoveArrayItem):
            del items[action.index]
        elif isinstance(action, UpdateArrayItem):
            items[action.index] = action.value
        else:
            item = items[action.index]
            if not isinstance(item, dict) or "is_visible" not in item:
                msg = f"Items of '{section_key.value}.{action.field}' have no visibility flag."
                raise InvalidMutationError(msg)
            items[action.index] = {**item, "is_visible": not item["is_visible"]}
        data[action.field] = items

    try:
        section = SECTION_MODELS[section_key].model_validate(data)
    except ValidationError as e:
        msg = f"Invalid value for '{section_key.value}.{action.field}': {e}"
        raise InvalidMutationError(msg) from e
    return state.model_copy(update={section_key.value: section})


def reduce(state: TrialState, action: Action) -> TrialState:
    """Apply one action to the trial state and return the new state.

    The input state is never modified.

    Raises:
        InvalidMutationError: If the action names an unknown section or field,
            an out-of-range index, or a value the section schema rejects.
    """
    if isinstance(action, SetTrialData):
        return action.state.model_copy(deep=True)
    if isinstance(action, ResetForm):
        return TrialState(identity=state.identity)
    if isinstance(action, AppendChangeLog):
        logs = state.logs.model_copy(
            update={"changes_log": [*state.logs.changes_log, action.entry]},
        )
        return state.model_copy(update={"logs": logs})
    if isinstance(action, FIELD_ACTIONS):
        return _apply_field_action(state, action)
    msg = f"Unsupported action {type(action).__name__}."
    raise InvalidMutationError(msg)
