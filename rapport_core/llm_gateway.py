"""
RAPPORT Async LLM Gateway
=========================
Single entry point for chat completions against the Groq API:
- Key Rotation (Round-Robin)
- Failure Normalization (every transport or model error becomes UpstreamFailure)

Calls are made exactly once. Deciding whether to retry belongs to the caller.
"""

import os
import logging
from typing import List, Optional, Dict

from groq import AsyncGroq

from . import config
from .errors import ServiceUnavailable, UpstreamFailure

logger = logging.getLogger(__name__)


class AsyncLLMGateway:
    """
    Gateway for asynchronous LLM interactions with key rotation.
    """

    def __init__(self, api_keys: Optional[List[str]] = None, model: str = config.LLM_MODEL):
        self.api_keys: List[str] = api_keys if api_keys is not None else self._load_api_keys()
        self.clients: List[AsyncGroq] = [AsyncGroq(api_key=k) for k in self.api_keys]
        self.current_client_idx = 0
        self.model = model

        if self.clients:
            logger.info(f"LLM Gateway initialized with {len(self.clients)} API keys ({self.model})")
        else:
            logger.warning("No GROQ_API_KEY found! Conversation and analysis are disabled until it is set in .env")

    @property
    def configured(self) -> bool:
        return bool(self.clients)

    def _load_api_keys(self) -> List[str]:
        """Load API keys from environment variables."""
        keys = []
        for var_name in ["GROQ_API_KEY", "GROQ_API_KEY_2", "GROQ_API_KEY_3"]:
            key = os.getenv(var_name)
            if key and key not in keys:
                keys.append(key)
        return keys

    def _get_client(self) -> AsyncGroq:
        """Get the next client in rotation."""
        client = self.clients[self.current_client_idx]
        self.current_client_idx = (self.current_client_idx + 1) % len(self.clients)
        return client

    async def complete(
        self,
        system_prompt: Optional[str],
        messages: List[Dict[str, str]],
        max_tokens: int = config.CONVERSATION_MAX_TOKENS,
        temperature: float = config.LLM_TEMP,
    ) -> str:
        """
        Send an ordered list of role/content turns and return the first text of the reply.
        An empty reply comes back as "".
        """
        if not self.configured:
            raise ServiceUnavailable("Language model not configured")

        payload = []
        if system_prompt:
            payload.append({"role": "system", "content": system_prompt})
        payload.extend(messages)

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=payload,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as e:
            logger.error(f"API Call Failed ({self.model}): {e}")
            # If rate limited, skip this key for the next call as well
            if "429" in str(e):
                logger.warning("Rate limit hit, rotating key immediately.")
                self.current_client_idx = (self.current_client_idx + 1) % len(self.clients)
            raise UpstreamFailure("Language model request failed") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
