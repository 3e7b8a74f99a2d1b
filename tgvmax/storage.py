"""Durable task table and result files with async I/O"""

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import aiofiles.os
import orjson
from loguru import logger

from .exceptions import ValidationError
from .models import AutoConfirmTask


class TaskStore:
    """
    JSON file holding the auto-confirmation task table.

    Writes go to a sibling temp file that then replaces the real one, so a
    crash mid-write never leaves a truncated table behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def save(self, tasks: List[AutoConfirmTask]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        json_bytes = orjson.dumps(
            {
                "savedAt": datetime.now(timezone.utc).isoformat(),
                "tasks": [task.to_dict() for task in tasks],
            },
            option=orjson.OPT_INDENT_2,
        )

        # One temp name per write; overlapping saves never share a file
        tmp_file = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(tmp_file, "wb") as f:
            await f.write(json_bytes)
        await aiofiles.os.replace(tmp_file, self.path)

        logger.debug(f"💾 Saved {len(tasks)} auto-confirm tasks to {self.path.name}")

    async def load(self) -> List[AutoConfirmTask]:
        """
        Read the task table back.

        Returns:
            The stored tasks; empty if the file is absent or unreadable
        """
        if not self.path.exists():
            return []

        try:
            async with aiofiles.open(self.path, "rb") as f:
                data = orjson.loads(await f.read())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.error(f"❌ Could not read task file {self.path}: {e}")
            return []

        tasks = []
        for entry in data.get("tasks", []) if isinstance(data, dict) else []:
            try:
                tasks.append(AutoConfirmTask.from_dict(entry))
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning(f"⚠️ Skipping unreadable task entry: {e}")

        logger.info(f"📂 Loaded {len(tasks)} auto-confirm tasks from {self.path.name}")
        return tasks


async def save_search_results(result: Dict[str, Any], output_file: Path) -> Path:
    """Write a fetch result as pretty JSON, returns the file path"""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    json_bytes = orjson.dumps(
        result,
        option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        default=str,
    )
    async with aiofiles.open(output_file, "wb") as f:
        await f.write(json_bytes)

    logger.success(f"💾 Saved results: {output_file.name} ({len(json_bytes)/1024:.1f}KB)")
    return output_file
