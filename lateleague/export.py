"""Database export backends used by the admin download endpoint.

``JsonExporter`` serializes the league tables and configuration itself.
``CommandExporter`` hands the job to an external dump tool (``pg_dump``,
``sqlite3 .dump``...) and streams its stdout. The tool contract is simple:
the dump is written to stdout, diagnostics to stderr, and a non-zero exit
status means the dump is unusable.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
import shlex
from typing import AsyncIterator

from .errors import ExportError
from .storage import Database, utc_now_iso

logger = logging.getLogger("late-league.export")

CHUNK_SIZE = 64 * 1024
STDERR_TAIL = 500


def export_filename(extension: str, now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return f"late-league-{moment.strftime('%Y%m%dT%H%M%SZ')}.{extension}"


class JsonExporter:
    extension = "json"
    content_type = "application/json"

    def __init__(self, db: Database) -> None:
        self.db = db

    def build_document(self) -> dict[str, object]:
        document: dict[str, object] = dict(self.db.dump_tables())
        document["config"] = self.db.get_config().to_document()
        document["exportDate"] = utc_now_iso()
        return document

    async def stream(self) -> AsyncIterator[bytes]:
        yield json.dumps(self.build_document(), indent=2).encode("utf-8")


class CommandExporter:
    extension = "sql"
    content_type = "application/sql"

    def __init__(self, command: str, target: str) -> None:
        self.args = [part.replace("{db}", target) for part in shlex.split(command)]
        if not self.args:
            raise ValueError("Export command is empty.")

    async def stream(self) -> AsyncIterator[bytes]:
        logger.info("Running export command %s", self.args[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *self.args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExportError(f"Export tool not found: {self.args[0]}") from exc
        except PermissionError as exc:
            raise ExportError(f"Export tool is not executable: {self.args[0]}") from exc

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            while True:
                chunk = await process.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
            returncode = await process.wait()
            stderr = await stderr_task
            if returncode != 0:
                tail = stderr.decode("utf-8", "replace").strip()[-STDERR_TAIL:]
                raise ExportError(f"{self.args[0]} exited with status {returncode}: {tail}")
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()


def build_exporter(db: Database, command: str | None, target: str) -> JsonExporter | CommandExporter:
    if command:
        return CommandExporter(command, target)
    return JsonExporter(db)
