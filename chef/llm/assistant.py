from typing import Callable

from loguru import logger

from core.recipe import Recipe
from core.session import ChatMessage, ChatMessageRole
from llm.base import BaseLLM
from llm.prompts import build_cooking_system_prompt


class CookingAssistant:
    """Answers free-form cooking questions in the context of the current step."""

    def __init__(self, provider_factory: Callable[[], BaseLLM], max_history: int = 20):
        # A factory rather than a provider so that provider/key changes in
        # the settings apply to the next question.
        self._provider_factory = provider_factory
        self.max_history = max_history

    def build_messages(
        self,
        question: str,
        recipe: Recipe,
        step_index: int,
        history: list[ChatMessage] | None = None,
    ) -> list[dict]:
        messages = [{"role": "system", "content": build_cooking_system_prompt(recipe, step_index)}]

        # Claude rejects two consecutive turns with the same role, so merge them
        for msg in (history or [])[-self.max_history:]:
            if msg.role == ChatMessageRole.SYSTEM:
                continue
            role = "user" if msg.role == ChatMessageRole.USER else "assistant"
            if len(messages) > 1 and messages[-1]["role"] == role:
                messages[-1]["content"] += "\n" + msg.content
            else:
                messages.append({"role": role, "content": msg.content})

        # The conversation has to open with a user turn
        while len(messages) > 1 and messages[1]["role"] != "user":
            messages.pop(1)

        if len(messages) > 1 and messages[-1]["role"] == "user":
            messages[-1]["content"] += "\n" + question
        else:
            messages.append({"role": "user", "content": question})
        return messages

    async def answer(
        self,
        question: str,
        recipe: Recipe,
        step_index: int,
        history: list[ChatMessage] | None = None,
    ) -> str:
        messages = self.build_messages(question, recipe, step_index, history)
        provider = self._provider_factory()
        logger.info("Asking assistant: '{}' (step {})", question[:60], step_index + 1)
        reply = await provider.complete(messages)
        logger.debug("Assistant reply: '{}'", reply[:80])
        return reply
