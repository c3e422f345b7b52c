"""
RAPPORT Core Data Structures
============================
Pydantic models for request validation, scenario loading and the structured
scoring payload returned by the language model.

Wire names are camelCase (the browser client and scenario files use them);
Python attributes stay snake_case through field aliases.
"""

from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ─── SCENARIO CATALOG ───────────────────────────────────────────────────────

class Scenario(WireModel):
    id: str = Field(..., description="Catalog key, also the file stem")
    name: str = Field("", description="Display name")
    description: str = Field("", description="Short description shown before starting")
    system_prompt: str = Field(..., alias="systemPrompt", description="Role-play instruction for the character")
    character_name: str = Field(..., alias="characterName", description="Name of the simulated colleague")
    initial_message: str = Field(..., alias="initialMessage", description="Opening line spoken by the character")


class ScenarioPrompt(WireModel):
    """The subset of a scenario the client sends back for each conversation turn."""
    system_prompt: str = Field(..., alias="systemPrompt")
    character_name: str = Field(..., alias="characterName")


# ─── TRANSCRIPT ─────────────────────────────────────────────────────────────

class TranscriptMessage(BaseModel):
    role: Literal["user", "assistant"] = Field(..., description="'user' is the participant, 'assistant' the character")
    content: str = Field(..., description="Spoken text of the turn")


# ─── ANALYSIS MODELS ────────────────────────────────────────────────────────

class DimensionScore(BaseModel):
    score: int = Field(..., ge=1, le=5, description="Score from 1 to 5")
    quote: str = Field(..., description="Direct quote from the transcript")
    feedback: str = Field(..., description="Explanation for the assigned score")


class AnalysisResult(WireModel):
    conflict_resolution: DimensionScore = Field(..., alias="conflictResolution")
    professionalism: DimensionScore
    articulation: DimensionScore
    learning: DimensionScore
    overall_summary: str = Field(..., alias="overallSummary")


# ─── API PAYLOADS ───────────────────────────────────────────────────────────

class CreateSessionRequest(WireModel):
    scenario_id: Optional[str] = Field(None, alias="scenarioId")


class ConversationRequest(BaseModel):
    message: str = Field(..., min_length=1)
    scenario: ScenarioPrompt
    transcript: List[TranscriptMessage] = Field(default_factory=list)


class SpeakRequest(BaseModel):
    text: Optional[str] = None


class SessionSummary(BaseModel):
    id: str
    created_at: datetime
    summary: str


class SessionDetail(BaseModel):
    id: str
    scenario_id: str
    created_at: datetime
    transcript: List[TranscriptMessage]
    analysis: Optional[dict] = None
    analysis_updated_at: Optional[datetime] = None
