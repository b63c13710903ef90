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

"""Contains functions for coercing raw wire values into normalized values.

Every function here is total: malformed input degrades to an empty or
default value and the problem is reported through logging only.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote, urlsplit

from .models import Attachment

logger = logging.getLogger(__name__)

RESERVED_DELIMITER = "|||"
INPUT_DATE_FORMAT = "%m-%d-%Y"
WIRE_DATE_FORMAT = "%Y-%m-%d"
DEFAULT_AGE_UNIT = "Years"
DEFAULT_ATTACHMENT_TYPE = "application/octet-stream"

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%B %d %Y",
)
_LEGACY_NOTE_SOURCE = re.compile(r"\s+-\s+Source:\s+(.+)$")
_LEGACY_NOTE_HEADER = re.compile(r"^(.+?)\s+\((.+?)\):\s+(.+)$", re.DOTALL)


def to_text(value: Any) -> str:
    """Render a scalar wire value as text; containers become JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def to_nullable(value: Any) -> str | None:
    """Trim a value for the wire, mapping blank values to None."""
    text = to_text(value).strip()
    return text or None


def parse_json_value(value: str) -> Any | None:
    """Decode a string that looks like a JSON array or object.

    Returns:
        The decoded value, or None if the string is not JSON-shaped or
        fails to decode.
    """
    text = value.strip()
    if not text or text[0] not in "[{":
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Value looks like JSON but failed to decode: %.80s", text)
        return None


def _parse_date(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = to_text(value).strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable date value %r; using an empty date.", text)
        return None


def normalize_date(value: Any) -> str:
    """Normalize any supported date representation to ``MM-DD-YYYY``.

    Args:
        value: A wire date such as ``2024-03-01``, ``03-01-2024`` or an ISO
            datetime.

    Returns:
        The canonical in-memory date, or an empty string if the value is
        empty or cannot be parsed.
    """
    parsed = _parse_date(value)
    return parsed.strftime(INPUT_DATE_FORMAT) if parsed else ""


def date_to_wire(value: Any) -> str | None:
    """Convert an in-memory date to the store's ``YYYY-MM-DD`` form."""
    parsed = _parse_date(value)
    return parsed.strftime(WIRE_DATE_FORMAT) if parsed else None


@dataclass(frozen=True)
class ListCodec:
    """Reversible encoding of a list of strings into a single wire string.

    ``read_delimiter`` is what legacy data was split on; ``write_delimiter``
    joins items back. Whenever an item contains the read delimiter the whole
    list is joined with the reserved delimiter instead so it splits back to
    the same items.
    """

    read_delimiter: str | None
    write_delimiter: str
    object_keys: tuple[str, ...] = ("value", "label", "name")
    always_reserved: bool = False

    def decode(self, raw: Any) -> list[str]:
        if raw is None:
            return []
        if isinstance(raw, (list, tuple)):
            return self._flatten(raw)
        if isinstance(raw, dict):
            item = self._item_text(raw)
            return [item] if item else []
        if not isinstance(raw, str):
            text = str(raw).strip()
            return [text] if text else []

        text = raw.strip()
        if not text:
            return []
        parsed = parse_json_value(text)
        if isinstance(parsed, (list, dict)):
            return self.decode(parsed)
        if RESERVED_DELIMITER in text:
            parts = text.split(RESERVED_DELIMITER)
        elif self.read_delimiter and not self.always_reserved:
            parts = text.split(self.read_delimiter)
        else:
            parts = [text]
        return [part.strip() for part in parts if part.strip()]

    def encode(self, items: Any) -> str | None:
        cleaned = self._flatten(items if isinstance(items, (list, tuple)) else [items])
        if not cleaned:
            return None
        if self.read_delimiter and any(self.read_delimiter in item for item in cleaned):
            joined = RESERVED_DELIMITER.join(cleaned)
            # A lone item still needs the marker or it is split on read.
            return joined if len(cleaned) > 1 else joined + RESERVED_DELIMITER
        if self.always_reserved:
            return RESERVED_DELIMITER.join(cleaned)
        return self.write_delimiter.join(cleaned)

    def _flatten(self, items: Any) -> list[str]:
        result = []
        for item in items:
            if item is None:
                continue
            text = self._item_text(item) if isinstance(item, dict) else to_text(item)
            text = text.strip()
            if text:
                result.append(text)
        return result

    def _item_text(self, item: dict[str, Any]) -> str:
        for key in self.object_keys:
            value = item.get(key)
            if value not in (None, ""):
                return to_text(value).strip()
        logger.warning("List item has no recognizable label: %.80s", item)
        return json.dumps(item)


GENERIC_LIST = ListCodec(
    read_delimiter=",",
    write_delimiter=", ",
    object_keys=("value", "label", "drug_name", "name"),
)
DRUG_LIST = ListCodec(
    read_delimiter=", ",
    write_delimiter=", ",
    object_keys=("value", "label", "drug_name", "generic_name", "name"),
)
CRITERIA_LIST = ListCodec(read_delimiter="; ", write_delimiter="; ")
KEYWORD_LIST = ListCodec(read_delimiter=", ", write_delimiter=", ")
MEASURE_LIST = ListCodec(
    read_delimiter=None, write_delimiter=RESERVED_DELIMITER, always_reserved=True,
)


def normalize_count(value: Any) -> str:
    """Strip thousands separators from a count and keep it as text.

    Non-numeric or non-finite values yield an empty string.
    """
    if value is None or isinstance(value, bool):
        return ""
    text = to_text(value).replace(",", "").strip()
    if not text:
        return ""
    try:
        number = float(text)
    except ValueError:
        logger.warning("Count %r is not numeric; dropping it.", value)
        return ""
    if not math.isfinite(number):
        logger.warning("Count %r is not finite; dropping it.", value)
        return ""
    return text


def count_to_int(value: Any) -> int | None:
    text = normalize_count(value)
    if not text:
        return None
    return int(float(text))


def parse_age(value: Any) -> tuple[str, str]:
    """Split an age such as ``"18 Years"`` or ``"10,years"`` into value and unit."""
    if value is None:
        return "", DEFAULT_AGE_UNIT
    text = to_text(value).strip()
    if not text or text.lower() in ("null", "none", "undefined"):
        return "", DEFAULT_AGE_UNIT

    if "," in text:
        parts = [part.strip() for part in text.split(",")]
    else:
        parts = text.split()
    parts = [part for part in parts if part]

    if len(parts) >= 2:
        unit = " ".join(parts[1:]).strip()
        return parts[0], unit.capitalize() if unit else DEFAULT_AGE_UNIT
    if parts:
        return parts[0], DEFAULT_AGE_UNIT
    return "", DEFAULT_AGE_UNIT


def join_age(value: str, unit: str) -> str | None:
    value = (value or "").strip()
    if not value:
        return None
    return f"{value} {unit or DEFAULT_AGE_UNIT}".strip()


def parse_flag(value: Any) -> bool:
    """Read a ``Yes``/``No`` or boolean wire flag."""
    if isinstance(value, bool):
        return value
    return to_text(value).strip().lower() in ("yes", "true", "1")


def flag_to_wire(value: bool) -> str:
    return "Yes" if value else "No"


def _looks_like_url(text: str) -> bool:
    parts = urlsplit(text)
    return bool(parts.scheme in ("http", "https") and parts.netloc)


def _name_from_url(url: str) -> str:
    name = unquote(PurePosixPath(urlsplit(url).path).name)
    return name or url


def normalize_attachment(value: Any) -> Attachment | None:
    """Normalize one attachment reference to ``Attachment``.

    Accepts a bare URL, a bare file name, a JSON-encoded object or an object
    keyed by ``url``, ``href``, ``link`` or ``fileUrl``.
    """
    if value is None:
        return None
    if isinstance(value, Attachment):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        parsed = parse_json_value(text)
        if isinstance(parsed, dict):
            return normalize_attachment(parsed)
        if isinstance(parsed, list):
            return normalize_attachment(parsed[0]) if parsed else None
        if _looks_like_url(text):
            return Attachment(name=_name_from_url(text), url=text)
        return Attachment(name=text, url="")
    if isinstance(value, dict):
        url = ""
        for key in ("url", "href", "link", "fileUrl", "file_url"):
            if value.get(key):
                url = to_text(value[key]).strip()
                break
        name = to_text(value.get("name") or value.get("fileName") or "").strip()
        if not name and url:
            name = _name_from_url(url)
        if not name and not url:
            return None
        content_type = to_text(value.get("type") or DEFAULT_ATTACHMENT_TYPE)
        return Attachment(name=name, url=url, type=content_type)

    logger.warning("Unsupported attachment shape %r; ignoring it.", type(value).__name__)
    return None


def normalize_attachments(value: Any) -> list[Attachment]:
    if value is None:
        return []
    if isinstance(value, str):
        parsed = parse_json_value(value)
        if parsed is not None:
            value = parsed
    if not isinstance(value, (list, tuple)):
        value = [value]
    result = []
    for item in value:
        attachment = normalize_attachment(item)
        if attachment is not None:
            result.append(attachment)
    return result


def parse_collection(value: Any, label: str) -> list[dict[str, Any]]:
    """Read a sub-item collection that may arrive as a list or a JSON string."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        parsed = parse_json_value(value)
        if parsed is None:
            logger.warning("Could not decode %s collection; starting empty.", label)
            return []
        value = parsed
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        logger.warning("Unexpected %s collection type %s.", label, type(value).__name__)
        return []
    rows = [row for row in value if isinstance(row, dict)]
    if len(rows) != len(value):
        logger.warning("Skipped %d malformed %s rows.", len(value) - len(rows), label)
    return rows


def parse_legacy_notes(text: str) -> list[dict[str, Any]]:
    """Parse the legacy ``"DATE (TYPE): CONTENT - Source: LINK; ..."`` notes string.

    Segments that do not match the pattern become ``General`` notes carrying
    the raw text as content.
    """
    text = text.strip()
    if not text or text == "No notes available":
        return []

    notes = []
    for index, part in enumerate(text.split("; "), start=1):
        source_link = ""
        content_part = part
        source_match = _LEGACY_NOTE_SOURCE.search(part)
        if source_match:
            source_link = source_match.group(1).strip()
            content_part = part[: part.rfind(" - Source:")]

        header = _LEGACY_NOTE_HEADER.match(content_part.strip())
        if header:
            notes.append(
                {
                    "id": str(index),
                    "date": header.group(1).strip(),
                    "type": header.group(2).strip() or "General",
                    "content": header.group(3).strip(),
                    "sourceLink": source_link,
                },
            )
        else:
            notes.append({"id": str(index), "type": "General", "content": part.strip()})
    return notes


def auto_identifier(seed: str) -> str:
    """Derive the stable ``TB-NNNNNN`` display identifier for a trial."""
    if not seed:
        return "TB-000000"
    value = 0
    encoded = seed.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + code_unit) & 0xFFFFFFFF
    return f"TB-{value % 1_000_000:06d}"
