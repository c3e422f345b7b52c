import json
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

from rapport_core.db import Database
from rapport_core.scenarios import ScenarioCatalog

WORKPLACE_CONFLICT = {
    "id": "workplace-conflict",
    "name": "Workplace Conflict",
    "description": "A teammate is upset about a changed release plan.",
    "systemPrompt": "You are Jordan, a frustrated senior engineer.",
    "characterName": "Jordan",
    "initialMessage": "Hey, can we chat?",
}

GOOD_ANALYSIS = {
    "conflictResolution": {"score": 4, "quote": "Sure.", "feedback": "Agreed to talk."},
    "professionalism": {"score": 5, "quote": "Sure.", "feedback": "Polite throughout."},
    "articulation": {"score": 3, "quote": "Sure.", "feedback": "Very brief."},
    "learning": {"score": 2, "quote": "Sure.", "feedback": "No reflection shown."},
    "overallSummary": "A short but courteous exchange.",
}


def write_catalog(directory) -> Path:
    scenarios_dir = Path(directory) / "scenarios"
    scenarios_dir.mkdir(parents=True, exist_ok=True)
    (scenarios_dir / "workplace-conflict.json").write_text(json.dumps(WORKPLACE_CONFLICT), encoding="utf-8")
    return scenarios_dir


def sqlite_url(directory) -> str:
    return f"sqlite+aiosqlite:///{os.path.join(directory, 'test.db')}"


@asynccontextmanager
async def temp_store():
    """A migrated SQLite database plus a one-scenario catalog, removed afterwards."""
    tmp = tempfile.TemporaryDirectory()
    db = Database(sqlite_url(tmp.name))
    try:
        await db.connect()
        yield db, ScenarioCatalog(write_catalog(tmp.name))
    finally:
        await db.dispose()
        tmp.cleanup()
