"""
RAPPORT Scenario Catalog
========================
Read-only conversation templates stored as `<scenarios_dir>/<id>.json`.
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Union

import aiofiles
from pydantic import ValidationError

from . import config
from .errors import InvalidInput, NotFound
from .structs import Scenario

logger = logging.getLogger(__name__)

SCENARIO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_scenario_id(scenario_id) -> str:
    if not isinstance(scenario_id, str) or not SCENARIO_ID_PATTERN.match(scenario_id):
        raise InvalidInput("Invalid scenario ID")
    return scenario_id


class ScenarioCatalog:
    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory) if directory is not None else config.SCENARIOS_DIR

    async def _load(self, path: Path) -> Scenario:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
        data.setdefault("id", path.stem)
        return Scenario.model_validate(data)

    async def get(self, scenario_id: str) -> Scenario:
        """Load one scenario. The id is checked against the allow-list before touching the disk."""
        validate_scenario_id(scenario_id)
        path = self.directory / f"{scenario_id}.json"
        if not path.is_file():
            raise NotFound("Scenario not found")
        return await self._load(path)

    async def list_all(self) -> List[Scenario]:
        if not self.directory.is_dir():
            logger.warning(f"Scenario directory missing: {self.directory}")
            return []

        scenarios = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                scenarios.append(await self._load(path))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping malformed scenario {path.name}: {e}")
        return scenarios
