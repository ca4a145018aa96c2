import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger

from core.config import ConfigManager
from core.controller import CookAlongController
from core.events import Event, EventBus, EventType
from core.recipe import Recipe

# Base directory for the chef package
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
MODELS_DIR = BASE_DIR / "models"


class CookAlongApp:
    """Composition root: builds every component once and wires them together."""

    def __init__(self, data_dir: Path = DATA_DIR, models_dir: Path = MODELS_DIR):
        self.config_manager = ConfigManager(data_dir)
        self.models_dir = models_dir
        self.bus = EventBus()
        self.controller: Optional[CookAlongController] = None
        self._speech_input = None

    def build_controller(self) -> CookAlongController:
        from audio.stt import CloudSpeechToText, SpeechToText, WhisperSpeechInput
        from audio.tts import CloudTextToSpeech, PiperSpeechOutput, TextToSpeech
        from llm.assistant import CookingAssistant
        from llm.base import LLMRouter
        from llm.narration import NaturalSpeechRewriter

        config = self.config_manager.config
        router = LLMRouter(self.config_manager)

        cloud = None
        if config.hardware.cloud_stt and config.api_keys.openai:
            cloud = CloudSpeechToText(api_key=config.api_keys.openai, language=config.hardware.language)

        self._speech_input = WhisperSpeechInput(
            SpeechToText(model_dir=self.models_dir / "stt", language=config.hardware.language),
            cloud=cloud,
        )
        speech_output = PiperSpeechOutput(
            TextToSpeech(model_dir=self.models_dir / "tts", voice=config.voice.voice_name),
            premium=CloudTextToSpeech(lambda: self.config_manager.config.api_keys.openai),
        )

        return CookAlongController(
            config,
            self._speech_input,
            speech_output,
            CookingAssistant(router.get_provider, max_history=config.session.max_history_messages),
            bus=self.bus,
            rewriter=NaturalSpeechRewriter(router.get_provider),
        )

    async def start(self, recipe_path: Optional[Path] = None, host: str = "0.0.0.0", port: int = 8080):
        """Boot sequence: build components, bring up speech, serve the API."""
        logger.info("=== Cook-Along starting ===")
        config = self.config_manager.config

        self.controller = self.build_controller()
        self.bus.subscribe(EventType.EXIT_REQUESTED, self._on_exit)
        self.bus.subscribe(EventType.HANDS_FREE_DISABLED, self._on_hands_free_disabled)

        await self.controller.initialize_speech(enabled=config.hardware.mic_enabled)

        from api.server import create_app
        import uvicorn

        app = create_app(self.config_manager, self.controller)
        server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
        logger.info("API server starting on port {}", port)

        if recipe_path is not None:
            recipe = Recipe.from_file(recipe_path)
            asyncio.create_task(self.controller.start_session(recipe))

        await server.serve()

    def _on_exit(self, event: Event) -> None:
        logger.info("Cook-along session closed. Waiting for the next recipe.")

    def _on_hands_free_disabled(self, event: Event) -> None:
        logger.warning("Hands-free mode disabled: {}", event.data.get("reason"))

    async def shutdown(self):
        logger.info("Shutting down...")
        if self.controller is not None:
            await self.controller.close()
        if self._speech_input is not None:
            self._speech_input.close()
        logger.info("Shutdown complete.")


def main():
    """Entry point. Optionally takes a recipe JSON file to start cooking right away."""
    import sys
    from loguru import logger as log

    log.remove()
    log.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")
    log.add(DATA_DIR / "cookalong.log", rotation="10 MB", retention="7 days", level="DEBUG")

    recipe_path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    app = CookAlongApp()

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(app.start(recipe_path))
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(app.shutdown())
        loop.close()


if __name__ == "__main__":
    main()
