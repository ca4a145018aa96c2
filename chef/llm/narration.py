from typing import Callable

from loguru import logger

from llm.base import BaseLLM
from llm.prompts import NATURAL_SPEECH_SYSTEM_PROMPT, build_natural_speech_prompt


class NaturalSpeechRewriter:
    """Turns terse recipe text into something that sounds spoken.

    Results are cached per input text; steps get repeated a lot.
    Falls back to the original text on any failure.
    """

    def __init__(self, provider_factory: Callable[[], BaseLLM]):
        self._provider_factory = provider_factory
        self._cache: dict[str, str] = {}

    async def rewrite(self, text: str) -> str:
        if text in self._cache:
            return self._cache[text]

        messages = [
            {"role": "system", "content": NATURAL_SPEECH_SYSTEM_PROMPT},
            {"role": "user", "content": build_natural_speech_prompt(text)},
        ]
        try:
            natural = (await self._provider_factory().complete(messages)).strip().strip('"')
        except Exception as e:
            logger.warning("Failed to convert to natural speech, using original: {}", e)
            return text

        if not natural:
            return text
        self._cache[text] = natural
        logger.debug("Natural speech: '{}'", natural[:80])
        return natural

    def clear(self) -> None:
        self._cache.clear()
