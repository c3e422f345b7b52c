"""
RAPPORT Analysis Pipeline
=========================
Scores a finished transcript along the fixed rubric, out of band:

1. Requested  - the API validates the session and schedules a background task.
2. Running    - the task reads the ordered transcript and asks the model for JSON.
3. Parsed     - the reply is parsed; unparseable text is kept as a fallback record.
4. Persisted  - one upsert per run. Re-running converges on a single row.

A failed run is logged and leaves no row behind. Nothing is retried
automatically; triggering the analysis again is always safe.
"""

import asyncio
import json
import logging
import re
from typing import Dict, List, Optional, Set

from pydantic import ValidationError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from . import config
from .db import AnalysisRecord, Database, utcnow
from .errors import Internal, InvalidInput, ServiceUnavailable
from .llm_gateway import AsyncLLMGateway
from .structs import AnalysisResult, TranscriptMessage
from .transcripts import TranscriptManager

logger = logging.getLogger(__name__)

FALLBACK_KEY = "rawAnalysis"
EMPTY_RESPONSE_TEXT = "Analysis failed to parse"

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_CODE_FENCE = re.compile(r"^```[A-Za-z0-9_-]*\s*|\s*```$")


def format_transcript(transcript: List[TranscriptMessage]) -> str:
    lines = []
    for m in transcript:
        label = "PARTICIPANT" if m.role == config.PARTICIPANT_ROLE else "AI SCENARIO"
        lines.append(f"{label}: {m.content}")
    return "\n".join(lines)


def build_analysis_prompt(transcript: List[TranscriptMessage]) -> str:
    dimensions = "\n".join(f"- {name}: {desc}" for name, desc in config.SCORING_DIMENSIONS.items())
    dimension_schema = ",\n".join(
        f'  "{name}": {{\n'
        f'    "score": 1-5,\n'
        f'    "quote": "specific quote from transcript",\n'
        f'    "feedback": "detailed explanation with specific example"\n'
        f"  }}"
        for name in config.SCORING_DIMENSIONS
    )
    return f"""You are an expert workplace skills assessor. Analyze the transcript below and provide DETAILED feedback with SPECIFIC EXAMPLES from the conversation.

Transcript:
{format_transcript(transcript)}

Rubric Dimensions:
{dimensions}

For each dimension, provide:
1. A score from 1-5
2. Detailed feedback (2-3 sentences) explaining the score
3. At least one SPECIFIC QUOTE from the transcript that supports your assessment

Return JSON in this exact format:
{{
{dimension_schema},
  "overallSummary": "2-3 sentence summary of participant performance"
}}

Return ONLY the JSON object. Do not wrap it in markdown code blocks."""


def parse_analysis(raw_text: Optional[str]) -> Dict:
    """
    Turn the model reply into the stored payload. Never raises: anything that is
    not a JSON object is preserved under `rawAnalysis` for manual review.
    """
    if not raw_text:
        return {FALLBACK_KEY: EMPTY_RESPONSE_TEXT}

    # LLMs sometimes still wrap in ```json ... ```
    cleaned = _CODE_FENCE.sub("", raw_text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"Analysis response is not JSON ({e}); storing raw text")
        return {FALLBACK_KEY: raw_text}

    if not isinstance(data, dict):
        logger.warning("Analysis response is not a JSON object; storing raw text")
        return {FALLBACK_KEY: raw_text}

    try:
        return AnalysisResult.model_validate(data).model_dump(by_alias=True)
    except ValidationError as e:
        logger.warning(f"Analysis does not match the rubric schema, storing as returned: {e.error_count()} errors")
        return data


class AnalysisPipeline:
    def __init__(self, database: Database, manager: TranscriptManager, gateway: AsyncLLMGateway):
        self.db = database
        self.manager = manager
        self.gateway = gateway
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def request_analysis(self, session_id: str) -> None:
        """Validate and schedule. Returns as soon as the background task exists."""
        transcript = await self.manager.get_transcript(session_id)
        if not any(m.role == config.PARTICIPANT_ROLE for m in transcript):
            raise InvalidInput("Transcript has no participant messages to analyze")
        if not self.gateway.configured:
            raise ServiceUnavailable("Language model not configured")
        self.schedule(session_id)

    def schedule(self, session_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.run(session_id), name=f"analysis-{session_id}")
        # The event loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        logger.info(f"Session {session_id}: analysis scheduled")
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"{task.get_name()} cancelled before completion")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background {task.get_name()} failed: {exc}", exc_info=exc)

    async def run(self, session_id: str) -> Dict:
        """One full analysis: read, score, parse, upsert."""
        transcript = await self.manager.get_transcript(session_id)
        logger.info(f"Session {session_id}: scoring {len(transcript)} messages...")

        response_text = await self.gateway.complete(
            None,
            [{"role": "user", "content": build_analysis_prompt(transcript)}],
            max_tokens=config.ANALYSIS_MAX_TOKENS,
            temperature=0.2,
        )
        result = parse_analysis(response_text)
        await self.save(session_id, result)

        logger.info(f"Analysis complete for session {session_id}")
        return result

    async def save(self, session_id: str, result: Dict) -> None:
        """Insert the analysis, or overwrite it in place if the session already has one."""
        insert = _UPSERT_INSERTS.get(self.db.dialect)
        if insert is None:
            raise Internal(f"Analysis upsert is not supported on {self.db.dialect}")

        now = utcnow()
        stmt = insert(AnalysisRecord).values(session_id=session_id, result=result, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[AnalysisRecord.session_id],
            set_={"result": stmt.excluded.result, "updated_at": stmt.excluded.updated_at},
        )
        async with self.db.transaction() as session:
            await session.execute(stmt)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight runs; cancel whatever is still going after `timeout`."""
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} analysis task(s) to finish...")
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
