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
"""Command-line interface for loading, editing and saving trial records."""

import asyncio
import json
import logging
import mimetypes
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
import yaml

from .attachments import AttachmentStoreClient
from .client import RecordStoreClient
from .config import Settings
from .drafts import DraftStore
from .models import LoadResult, SaveReport, SectionKey
from .orchestrator import SaveOrchestrator
from .reducer import InvalidMutationError
from .session import EditSession
from .store.base import DraftBackend
from .store.file import FileDraftBackend
from .store.memory import MemoryDraftBackend
from .store.postgres import PostgresDraftBackend

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Load, edit and save clinical-trial records with local drafts.")

T = TypeVar("T")


def load_config(config_file: str | None) -> dict[str, Any]:
    """Loads configuration from a YAML file."""
    if config_file:
        try:
            with open(config_file, "r") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}


def build_settings(config_file: str | None) -> Settings:
    return Settings(**load_config(config_file))


def build_backend(settings: Settings) -> DraftBackend:
    """Create the draft backend selected by ``settings.draft_backend``."""
    if settings.draft_backend == "memory":
        return MemoryDraftBackend()
    if settings.draft_backend == "postgres":
        return PostgresDraftBackend(settings.db_connection_string, table=settings.draft_table)
    return FileDraftBackend(settings.draft_dir)


def parse_value(raw: str) -> Any:
    """Read a command-line value as JSON, falling back to the plain string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


async def run_with_session(
    settings: Settings,
    backend: DraftBackend,
    work: Callable[[EditSession], Awaitable[T]],
) -> T:
    """Open the remote clients, build a session and run ``work`` with it."""
    async with RecordStoreClient(settings) as client, AttachmentStoreClient(
        settings,
    ) as attachments:
        session = EditSession(settings, client, DraftStore(backend), attachments=attachments)
        return await work(session)


def _echo_load(result: LoadResult) -> None:
    typer.echo(f"Load status: {result.status.value}")
    for key, source in result.sources.items():
        typer.echo(f"  {key.value}: {source.value}")


def _echo_report(report: SaveReport) -> None:
    typer.echo(f"Save status: {report.status.value}. {report.message}")
    for key, result in report.sections.items():
        line = f"  {key.value}: {'ok' if result.ok else 'failed'}"
        if result.detail:
            line += f" ({result.detail})"
        typer.echo(line)


@app.command()
def load(
    trial_id: str = typer.Argument(..., help="Identifier of the trial to load."),
    skip_draft: bool = typer.Option(False, help="Ignore and clear local drafts."),
    show_state: bool = typer.Option(False, help="Print the resolved state as JSON."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Load a trial and show where each section came from."""
    settings = build_settings(config_file)

    async def work(session: EditSession) -> LoadResult:
        result = await session.load(trial_id, skip_draft=skip_draft)
        if show_state:
            typer.echo(session.state.model_dump_json(indent=2))
        return result

    with build_backend(settings) as backend:
        result = asyncio.run(run_with_session(settings, backend, work))
    _echo_load(result)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def edit(
    trial_id: str = typer.Argument(..., help="Identifier of the trial to edit."),
    section: SectionKey = typer.Argument(..., help="Section holding the field."),
    field: str = typer.Argument(..., help="Name of the field to change."),
    value: str = typer.Argument(..., help="New value, read as JSON when possible."),
    save: bool = typer.Option(False, help="Save the trial after the edit."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Change one field of a trial, keeping the change as a draft."""
    settings = build_settings(config_file)

    async def work(session: EditSession) -> SaveReport | None:
        await session.load(trial_id)
        session.update_field(section, field, parse_value(value))
        if section not in session.drafting_sections and not save:
            logger.warning("Section %s is not drafted; use --save to keep the edit.", section.value)
        if save:
            return await SaveOrchestrator(session).save()
        return None

    try:
        with build_backend(settings) as backend:
            report = asyncio.run(run_with_session(settings, backend, work))
    except InvalidMutationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    if report is None:
        typer.echo(f"Updated {section.value}.{field} for {trial_id}.")
        return
    _echo_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def attach(
    trial_id: str = typer.Argument(..., help="Identifier of the trial to edit."),
    section: SectionKey = typer.Argument(..., help="Section holding the field."),
    field: str = typer.Argument(..., help="Attachment field or sub-item collection."),
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to upload."),
    index: int = typer.Option(None, help="Sub-item to attach the file to."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Upload a file and reference it from a trial section."""
    settings = build_settings(config_file)
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"

    async def work(session: EditSession) -> Any:
        await session.load(trial_id)
        return await session.attach_file(
            section, field, path.name, path.read_bytes(), content_type, index=index,
        )

    try:
        with build_backend(settings) as backend:
            attachment = asyncio.run(run_with_session(settings, backend, work))
    except InvalidMutationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    if attachment is None:
        typer.echo(f"Upload of {path.name} failed.", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Attached {attachment.name} ({attachment.url}).")


@app.command()
def save(
    trial_id: str = typer.Argument(..., help="Identifier of the trial to save."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Load a trial with its drafts and save it to the record store."""
    settings = build_settings(config_file)

    async def work(session: EditSession) -> SaveReport:
        await session.load(trial_id)
        return await SaveOrchestrator(session).save()

    with build_backend(settings) as backend:
        report = asyncio.run(run_with_session(settings, backend, work))
    _echo_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def drafts(
    trial_id: str = typer.Argument(None, help="Show the drafts of one trial."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """List trials with drafts, or the drafts held for one trial."""
    settings = build_settings(config_file)
    with build_backend(settings) as backend:
        store = DraftStore(backend)
        if trial_id is None:
            for found in store.trial_ids():
                typer.echo(found)
            return

        marker = store.read_marker(trial_id)
        local_save = store.read_local_save(trial_id)
        if marker is not None:
            typer.echo(f"Last commit: {marker.committed_at.isoformat()}")
        if local_save is not None:
            typer.echo(f"Last local save: {local_save.isoformat()}")
        for key, entry in store.drafts(trial_id).items():
            pending = marker is None or entry.written_at > marker.committed_at
            state = "pending" if pending else "stale"
            typer.echo(f"  {key.value}: {entry.written_at.isoformat()} ({state})")


@app.command("clear-drafts")
def clear_drafts(
    trial_id: str = typer.Argument(..., help="Trial whose drafts are removed."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Remove every section draft of a trial."""
    settings = build_settings(config_file)
    with build_backend(settings) as backend:
        DraftStore(backend).clear_all(trial_id)
    typer.echo(f"Cleared drafts for {trial_id}.")


def main():
    app()


if __name__ == "__main__":
    main()
