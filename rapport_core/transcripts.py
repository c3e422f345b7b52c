"""
RAPPORT Transcript Manager
==========================
Creates sessions and keeps their ordered transcripts, atomically:
- Session row and opening line are written in one transaction.
- A transcript save replaces every message of the session in one transaction,
  so the stored conversation always matches one complete client write.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Tuple

from pydantic import ValidationError
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .db import AnalysisRecord, Database, SessionRecord, TranscriptMessageRecord, as_utc
from .errors import Internal, InvalidInput, NotFound
from .scenarios import ScenarioCatalog, validate_scenario_id
from .structs import Scenario, SessionDetail, SessionSummary, TranscriptMessage

logger = logging.getLogger(__name__)


def summarize(content) -> str:
    """One-line dashboard summary from the first participant message."""
    if content is None:
        return "No messages"
    if len(content) > config.SUMMARY_MAX_CHARS:
        return content[:config.SUMMARY_MAX_CHARS] + "..."
    return content


def validate_messages(messages: Any) -> List[TranscriptMessage]:
    if not isinstance(messages, list):
        raise InvalidInput("transcript must be an array")
    validated = []
    for msg in messages:
        if not isinstance(msg, dict) or not isinstance(msg.get("role"), str) or not isinstance(msg.get("content"), str):
            raise InvalidInput("Each message must have role and content strings")
        try:
            validated.append(TranscriptMessage.model_validate(msg))
        except ValidationError:
            raise InvalidInput('role must be "user" or "assistant"')
    return validated


class TranscriptManager:
    def __init__(self, database: Database, catalog: ScenarioCatalog):
        self.db = database
        self.catalog = catalog

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.db.transaction() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Store failure while trying to {action}: {e}")
            raise Internal(f"Failed to {action}") from e

    @staticmethod
    async def _require_session(session: AsyncSession, session_id: str, lock: bool = False) -> SessionRecord:
        stmt = select(SessionRecord).where(SessionRecord.id == session_id)
        if lock:
            # Serializes concurrent writers of the same transcript
            stmt = stmt.with_for_update()
        record = (await session.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise NotFound("Session not found")
        return record

    @staticmethod
    async def _read_transcript(session: AsyncSession, session_id: str) -> List[TranscriptMessage]:
        result = await session.execute(
            select(TranscriptMessageRecord.role, TranscriptMessageRecord.content)
            .where(TranscriptMessageRecord.session_id == session_id)
            .order_by(TranscriptMessageRecord.position)
        )
        return [TranscriptMessage(role=row.role, content=row.content) for row in result]

    async def create_session(self, scenario_id) -> Tuple[str, Scenario, List[TranscriptMessage]]:
        validate_scenario_id(scenario_id)
        scenario = await self.catalog.get(scenario_id)
        session_id = str(uuid.uuid4())
        opening = TranscriptMessage(role=config.CHARACTER_ROLE, content=scenario.initial_message)

        async with self._transaction("create session") as session:
            session.add(SessionRecord(id=session_id, scenario_id=scenario_id))
            session.add(TranscriptMessageRecord(
                session_id=session_id, role=opening.role, content=opening.content, position=0
            ))

        logger.info(f"Created session {session_id} for scenario '{scenario_id}'")
        return session_id, scenario, [opening]

    async def get_transcript(self, session_id: str) -> List[TranscriptMessage]:
        async with self._transaction("get transcript") as session:
            await self._require_session(session, session_id)
            return await self._read_transcript(session, session_id)

    async def get_session(self, session_id: str) -> SessionDetail:
        async with self._transaction("get session") as session:
            record = await self._require_session(session, session_id)
            transcript = await self._read_transcript(session, session_id)
            analysis = (await session.execute(
                select(AnalysisRecord.result, AnalysisRecord.updated_at).where(AnalysisRecord.session_id == session_id)
            )).one_or_none()

        return SessionDetail(
            id=record.id,
            scenario_id=record.scenario_id,
            created_at=as_utc(record.created_at),
            transcript=transcript,
            analysis=analysis.result if analysis else None,
            analysis_updated_at=as_utc(analysis.updated_at) if analysis else None,
        )

    async def replace_transcript(self, session_id: str, messages: Any) -> int:
        """Swap the whole stored transcript for `messages`, positions taken from list order."""
        async with self._transaction("update transcript") as session:
            await self._require_session(session, session_id, lock=True)
            validated = validate_messages(messages)

            await session.execute(
                delete(TranscriptMessageRecord).where(TranscriptMessageRecord.session_id == session_id)
            )
            if validated:
                await session.execute(
                    insert(TranscriptMessageRecord),
                    [
                        {"session_id": session_id, "role": m.role, "content": m.content, "position": i}
                        for i, m in enumerate(validated)
                    ],
                )

        logger.debug(f"Session {session_id}: stored {len(validated)} messages")
        return len(validated)

    async def list_sessions(self) -> List[SessionSummary]:
        first_participant_message = (
            select(TranscriptMessageRecord.content)
            .where(
                TranscriptMessageRecord.session_id == SessionRecord.id,
                TranscriptMessageRecord.role == config.PARTICIPANT_ROLE,
            )
            .order_by(TranscriptMessageRecord.position)
            .limit(1)
            .correlate(SessionRecord)
            .scalar_subquery()
        )

        async with self._transaction("list sessions") as session:
            result = await session.execute(
                select(SessionRecord.id, SessionRecord.created_at, first_participant_message.label("first_message"))
                .order_by(SessionRecord.created_at.desc())
            )
            rows = result.all()

        return [SessionSummary(id=r.id, created_at=as_utc(r.created_at), summary=summarize(r.first_message)) for r in rows]
