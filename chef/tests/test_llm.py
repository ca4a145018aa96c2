"""Tests for prompts, the cooking assistant, narration rewriting and provider routing."""
import pytest

from core.config import ConfigManager
from core.session import ChatMessage, ChatMessageRole, ChatMessageType
from fakes import FakeProvider, three_step_recipe
from llm.assistant import CookingAssistant
from llm.base import LLMRouter
from llm.narration import NaturalSpeechRewriter
from llm.prompts import build_completion_message, build_cooking_system_prompt, build_welcome_message
from llm.providers.claude_provider import ClaudeProvider
from llm.providers.openai_provider import OpenAIProvider


class TestPrompts:
    def test_system_prompt_has_recipe_context(self):
        prompt = build_cooking_system_prompt(three_step_recipe(), step_index=1)
        assert "Tomato Soup" in prompt
        assert "- 2 onions" in prompt
        assert "Step 2: Simmer for 10 minutes." in prompt
        assert "currently on Step 2" in prompt
        assert "Vegetarian" in prompt

    def test_welcome_mentions_start(self):
        message = build_welcome_message(three_step_recipe())
        assert "Tomato Soup" in message
        assert "3 steps" in message
        assert "2 servings" in message
        assert "say \"start\"" in message

    def test_completion_message(self):
        assert "Tomato Soup" in build_completion_message(three_step_recipe())


def _message(content, role, type=ChatMessageType.TEXT):
    return ChatMessage(content=content, role=role, type=type)


class TestCookingAssistant:
    def test_messages_start_with_system_prompt(self):
        assistant = CookingAssistant(lambda: FakeProvider())
        messages = assistant.build_messages("How thick should it be?", three_step_recipe(), 2)
        assert messages[0]["role"] == "system"
        assert "currently on Step 3" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "How thick should it be?"}

    def test_history_roles_and_system_messages_skipped(self):
        assistant = CookingAssistant(lambda: FakeProvider())
        history = [
            _message("Welcome!", ChatMessageRole.ASSISTANT, ChatMessageType.SYSTEM_NOTIFICATION),
            _message("Can I use butter?", ChatMessageRole.USER),
            _message("Yes, butter works.", ChatMessageRole.ASSISTANT),
            _message("Session paused.", ChatMessageRole.SYSTEM, ChatMessageType.SYSTEM_NOTIFICATION),
        ]
        messages = assistant.build_messages("How much?", three_step_recipe(), 0, history)

        roles = [m["role"] for m in messages]
        assert roles == ["system", "user", "assistant", "user"]
        assert messages[1]["content"] == "Can I use butter?"
        assert all("paused" not in m["content"] for m in messages[1:])

    def test_consecutive_roles_are_merged(self):
        assistant = CookingAssistant(lambda: FakeProvider())
        history = [
            _message("Is it spicy?", ChatMessageRole.USER),
            _message("Step 2 of 3: Simmer for 10 minutes.", ChatMessageRole.ASSISTANT),
            _message("I've started a timer for 10 minutes.", ChatMessageRole.ASSISTANT),
        ]
        messages = assistant.build_messages("Lid on or off?", three_step_recipe(), 1, history)

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert "timer" in messages[2]["content"]

    def test_history_is_bounded(self):
        assistant = CookingAssistant(lambda: FakeProvider(), max_history=2)
        history = [_message(f"question {i}", ChatMessageRole.USER) for i in range(10)]
        messages = assistant.build_messages("last", three_step_recipe(), 0, history)
        content = " ".join(m["content"] for m in messages[1:])
        assert "question 9" in content
        assert "question 7" not in content

    @pytest.mark.asyncio
    async def test_answer_uses_provider(self):
        provider = FakeProvider(reply="Keep the lid on.")
        assistant = CookingAssistant(lambda: provider)
        reply = await assistant.answer("Lid on or off?", three_step_recipe(), 1, [])
        assert reply == "Keep the lid on."
        assert provider.calls[0][-1]["content"] == "Lid on or off?"


class TestNaturalSpeechRewriter:
    @pytest.mark.asyncio
    async def test_rewrites_and_caches(self):
        provider = FakeProvider(reply='"Alright, let\'s chop those onions!"')
        rewriter = NaturalSpeechRewriter(lambda: provider)

        first = await rewriter.rewrite("Step 1: Chop the onions.")
        second = await rewriter.rewrite("Step 1: Chop the onions.")
        assert first == "Alright, let's chop those onions!"
        assert second == first
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_falls_back_on_error(self):
        rewriter = NaturalSpeechRewriter(lambda: FakeProvider(error=RuntimeError("timeout")))
        assert await rewriter.rewrite("Step 1: Chop the onions.") == "Step 1: Chop the onions."


class TestLLMRouter:
    def test_defaults_to_claude(self, tmp_path):
        router = LLMRouter(ConfigManager(tmp_path))
        assert isinstance(router.get_provider(), ClaudeProvider)

    def test_openai_when_selected(self, tmp_path):
        cm = ConfigManager(tmp_path)
        cm.update(provider="openai")
        cm.update_nested("api_keys", openai="sk-test")
        provider = LLMRouter(cm).get_provider()
        assert isinstance(provider, OpenAIProvider)
        assert provider.api_key == "sk-test"

    def test_provider_cached_until_key_changes(self, tmp_path):
        cm = ConfigManager(tmp_path)
        router = LLMRouter(cm)
        first = router.get_provider()
        assert router.get_provider() is first

        cm.update_nested("api_keys", claude="new-key")
        second = router.get_provider()
        assert second is not first
        assert second.api_key == "new-key"

    @pytest.mark.asyncio
    async def test_missing_key_answers_with_hint(self):
        reply = await ClaudeProvider(api_key="").complete([{"role": "user", "content": "hi"}])
        assert "API key" in reply
