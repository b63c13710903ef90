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
"""Manages the application's configuration using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SectionKey

DEFAULT_DRAFTING_SECTIONS = [key for key in SectionKey if key != SectionKey.OVERVIEW]


class Settings(BaseSettings):
    """Manages configuration for the draft engine.

    Reads settings from environment variables with the prefix 'TRIALS_'.
    """

    model_config = SettingsConfigDict(env_prefix="TRIALS_")

    # Remote record store
    api_base_url: str = "http://localhost:8000/api/v1/therapeutic"
    attachment_base_url: str = "http://localhost:8000/api/v1/attachments"
    request_timeout: float = 10.0
    probe_timeout: float = 3.0
    max_retries: int = 2
    backoff_base: float = 1.0
    settle_delay: float = 0.5

    # Edit session
    actor: str = "admin"
    drafting_sections: list[SectionKey] = DEFAULT_DRAFTING_SECTIONS

    # Draft storage
    draft_backend: Literal["file", "memory", "postgres"] = "file"
    draft_dir: Path = Path(".drafts")
    draft_table: str = "trial_drafts"

    # Database connection settings for the postgres draft backend
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    db_password: str = "postgres"
    db_name: str = "trials"

    @computed_field
    @property
    def db_connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return (
            f"host='{self.db_host}' port='{self.db_port}' "
            f"user='{self.db_user}' password='{self.db_password}' "
            f"dbname='{self.db_name}'"
        )


# Instantiate the settings so it can be imported directly
settings = Settings()
