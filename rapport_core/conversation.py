"""
RAPPORT Conversation Turn Engine
================================
Produces the character's next line. Stateless: the caller persists the turn.
"""

import logging
from typing import Iterable, List, Dict, Union

from . import config
from .llm_gateway import AsyncLLMGateway
from .structs import Scenario, ScenarioPrompt, TranscriptMessage

logger = logging.getLogger(__name__)

BREVITY_CONSTRAINT = (
    "IMPORTANT: Keep your responses SHORT - 2-5 sentences maximum. "
    "Be conversational, not a long speech."
)


def build_system_prompt(scenario: Union[Scenario, ScenarioPrompt]) -> str:
    return (
        f"{scenario.system_prompt}\n\n"
        f"{BREVITY_CONSTRAINT} You are roleplaying as: {scenario.character_name}"
    )


class ConversationEngine:
    def __init__(self, gateway: AsyncLLMGateway):
        self.gateway = gateway

    async def next_turn(
        self,
        scenario: Union[Scenario, ScenarioPrompt],
        prior_transcript: Iterable[TranscriptMessage],
        participant_message: str,
    ) -> str:
        """
        Ask the model for the character's reply. UpstreamFailure from the gateway
        propagates unchanged; it is never retried here.
        """
        messages: List[Dict[str, str]] = [{"role": m.role, "content": m.content} for m in prior_transcript]
        messages.append({"role": config.PARTICIPANT_ROLE, "content": participant_message})

        reply = await self.gateway.complete(
            build_system_prompt(scenario),
            messages,
            max_tokens=config.CONVERSATION_MAX_TOKENS,
        )
        if not reply:
            logger.warning(f"Empty reply from model for character '{scenario.character_name}'")
        return reply
