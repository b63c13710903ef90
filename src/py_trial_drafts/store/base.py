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
"""Defines the abstract base class for draft storage backends."""

import abc
import types


class DraftBackend(abc.ABC):
    """Abstract Base Class for all draft storage backends.

    A backend is a plain string key/value store. It knows nothing about
    drafts or timestamps; the draft store layers those on top and is
    responsible for catching any error a backend raises.
    Backends also act as context managers so callers can release whatever
    resource they hold.
    """

    def __enter__(self) -> "DraftBackend":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Release any resource held by the backend."""

    @abc.abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value stored under ``key``, or None if absent.

        Args:
            key: The storage key, e.g. ``draft:timing:TRIAL-1``.

        """
        raise NotImplementedError

    @abc.abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Removing an absent key is not an error."""
        raise NotImplementedError

    @abc.abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Return every stored key starting with ``prefix``."""
        raise NotImplementedError
