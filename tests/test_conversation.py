import unittest
import asyncio
import os
import sys
from unittest.mock import MagicMock, AsyncMock
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from rapport_core.conversation import BREVITY_CONSTRAINT, ConversationEngine, build_system_prompt
from rapport_core.errors import ServiceUnavailable, UpstreamFailure
from rapport_core.llm_gateway import AsyncLLMGateway
from rapport_core.structs import ScenarioPrompt, TranscriptMessage

SCENARIO = ScenarioPrompt(systemPrompt="You are Jordan, a frustrated senior engineer.", characterName="Jordan")


def groq_response(content):
    return MagicMock(choices=[MagicMock(message=MagicMock(content=content))])


class TestConversationEngine(unittest.TestCase):

    def test_system_prompt(self):
        prompt = build_system_prompt(SCENARIO)
        self.assertTrue(prompt.startswith("You are Jordan, a frustrated senior engineer."))
        self.assertIn(BREVITY_CONSTRAINT, prompt)
        self.assertTrue(prompt.endswith("You are roleplaying as: Jordan"))

    def test_next_turn_sends_history_then_message(self):
        gateway = MagicMock()
        gateway.complete = AsyncMock(return_value="Thanks. I was surprised by the new date.")
        engine = ConversationEngine(gateway)
        history = [TranscriptMessage(role="assistant", content="Hey, can we chat?")]

        reply = asyncio.run(engine.next_turn(SCENARIO, history, "Sure, what's up?"))

        self.assertEqual(reply, "Thanks. I was surprised by the new date.")
        system_prompt, messages = gateway.complete.await_args.args
        self.assertEqual(system_prompt, build_system_prompt(SCENARIO))
        self.assertEqual(messages, [
            {"role": "assistant", "content": "Hey, can we chat?"},
            {"role": "user", "content": "Sure, what's up?"},
        ])

    def test_empty_reply_is_returned(self):
        gateway = MagicMock()
        gateway.complete = AsyncMock(return_value="")
        reply = asyncio.run(ConversationEngine(gateway).next_turn(SCENARIO, [], "Hello?"))
        self.assertEqual(reply, "")

    def test_upstream_failure_is_not_retried(self):
        gateway = MagicMock()
        gateway.complete = AsyncMock(side_effect=UpstreamFailure("Language model request failed"))
        with self.assertRaises(UpstreamFailure):
            asyncio.run(ConversationEngine(gateway).next_turn(SCENARIO, [], "Hello?"))
        self.assertEqual(gateway.complete.await_count, 1)


class TestLLMGateway(unittest.TestCase):

    def setUp(self):
        self.gateway = AsyncLLMGateway(api_keys=["gsk_test_1", "gsk_test_2"], model="test-model")
        self.clients = [MagicMock(), MagicMock()]
        self.gateway.clients = self.clients

    def test_without_key_calls_are_unavailable(self):
        gateway = AsyncLLMGateway(api_keys=[])
        self.assertFalse(gateway.configured)
        with self.assertRaises(ServiceUnavailable):
            asyncio.run(gateway.complete(None, [{"role": "user", "content": "Hello"}]))

    def test_complete_builds_payload_and_rotates_keys(self):
        for client in self.clients:
            client.chat.completions.create = AsyncMock(return_value=groq_response("Hi"))

        async def run_test():
            first = await self.gateway.complete("Be brief.", [{"role": "user", "content": "Hello"}], max_tokens=50)
            second = await self.gateway.complete(None, [{"role": "user", "content": "Again"}])
            return first, second

        first, second = asyncio.run(run_test())
        self.assertEqual((first, second), ("Hi", "Hi"))

        kwargs = self.clients[0].chat.completions.create.await_args.kwargs
        self.assertEqual(kwargs["model"], "test-model")
        self.assertEqual(kwargs["max_tokens"], 50)
        self.assertEqual(kwargs["messages"], [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ])
        self.assertEqual(
            self.clients[1].chat.completions.create.await_args.kwargs["messages"],
            [{"role": "user", "content": "Again"}],
        )

    def test_missing_text_becomes_empty_string(self):
        self.clients[0].chat.completions.create = AsyncMock(return_value=groq_response(None))
        self.clients[1].chat.completions.create = AsyncMock(return_value=MagicMock(choices=[]))

        async def run_test():
            return [await self.gateway.complete(None, []), await self.gateway.complete(None, [])]

        self.assertEqual(asyncio.run(run_test()), ["", ""])

    def test_errors_become_upstream_failure(self):
        self.clients[0].chat.completions.create = AsyncMock(side_effect=RuntimeError("connection reset"))

        with self.assertRaises(UpstreamFailure):
            asyncio.run(self.gateway.complete(None, [{"role": "user", "content": "Hello"}]))
        self.assertEqual(self.clients[0].chat.completions.create.await_count, 1)


if __name__ == '__main__':
    unittest.main()
