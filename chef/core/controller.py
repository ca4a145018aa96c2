import asyncio
import time
from contextlib import suppress
from typing import Callable, Optional

from loguru import logger

from core.config import AppConfig, VoiceSettings
from core.errors import InvalidTransitionError
from core.events import Event, EventBus, EventType
from core.recipe import InstructionStep, Recipe
from core.session import (
    ChatMessage,
    ChatMessageRole,
    ChatMessageType,
    CookAlongSession,
    StepTimer,
    TimerStatus,
)
from core.state import SESSION_TRANSITIONS, CookAlongMode, SessionState, check_transition, is_active
from core.timers import StepTimerRegistry, describe_timer, detect_timer_duration, format_duration
from llm.assistant import CookingAssistant
from llm.narration import NaturalSpeechRewriter
from llm.prompts import (
    GOODBYE_MESSAGE,
    PAUSE_MESSAGE,
    RESUME_MESSAGE,
    build_completion_message,
    build_welcome_message,
)
from voice.channels import SpeechInputChannel, SpeechOutputChannel
from voice.commands import VoiceCommand
from voice.listening import HandsFreeListeningLoop
from voice.narrator import Narrator

HELP_MESSAGE = "I'm listening. What would you like to know?"
SPEECH_UNAVAILABLE_MESSAGE = (
    "Voice control is unavailable, so I've switched to manual mode. "
    "You can still use the buttons to move through the recipe."
)

_LIVE = (TimerStatus.RUNNING, TimerStatus.PAUSED)


class CookAlongController:
    """Owns one cook-along session and everything that talks or listens for it.

    Built once by the composition root and handed the two speech channels
    and the question-answering service. Voice input arrives through the
    listening loop's utterance queue and is processed one item at a time by
    a dispatcher task; the HTTP routes call the same public methods. Every
    public method catches and logs its own errors.
    """

    def __init__(
        self,
        config: AppConfig,
        speech_input: SpeechInputChannel,
        speech_output: SpeechOutputChannel,
        assistant: CookingAssistant,
        bus: Optional[EventBus] = None,
        rewriter: Optional[NaturalSpeechRewriter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.speech_input = speech_input
        self.speech_output = speech_output
        self.assistant = assistant
        self.rewriter = rewriter
        self._clock = clock

        self.narrator = Narrator(
            speech_output,
            self.bus,
            ms_per_char=config.session.tts_ms_per_char,
            buffer_s=config.session.tts_timeout_buffer_s,
        )
        self.listener = HandsFreeListeningLoop(speech_input, self.narrator, self.bus, config.listening)
        self.timers = StepTimerRegistry(self.bus, tick_interval=config.session.timer_tick_s)

        self._session: Optional[CookAlongSession] = None
        self._state = SessionState.NOT_STARTED
        self._mode = CookAlongMode(config.mode) if config.mode in ("voice", "manual") else CookAlongMode.VOICE
        self._speech_available = True
        self._audio_level = 0.0
        self._current_question: Optional[str] = None
        self._is_processing_question = False
        self._is_processing_command = False
        self._guard_token = 0
        self._dispatcher: Optional[asyncio.Task] = None

        self._unsubscribe = [
            self.bus.subscribe(EventType.TIMER_FINISHED, self._on_timer_finished),
            self.bus.subscribe(EventType.AUDIO_LEVEL, self._on_audio_level),
            self.bus.subscribe(EventType.HANDS_FREE_DISABLED, self._on_hands_free_disabled),
        ]

        self.apply_voice_settings(config.voice)

    # --- Reactive getters ---

    @property
    def session(self) -> Optional[CookAlongSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> CookAlongMode:
        return self._mode

    @property
    def current_step(self) -> Optional[InstructionStep]:
        return self._session.current_step if self._session else None

    @property
    def current_step_index(self) -> int:
        return self._session.current_step_index if self._session else 0

    @property
    def total_steps(self) -> int:
        return self._session.total_steps if self._session else 0

    @property
    def progress(self) -> float:
        return self._session.progress if self._session else 0.0

    @property
    def active_timers(self) -> list[StepTimer]:
        if self._session is None:
            return []
        return [t for t in self._session.active_timers if t.status in _LIVE]

    @property
    def conversation_history(self) -> list[ChatMessage]:
        return list(self._session.conversation_history) if self._session else []

    @property
    def is_listening(self) -> bool:
        return self.listener.is_listening

    @property
    def is_hands_free(self) -> bool:
        return self.listener.is_enabled

    @property
    def is_speaking(self) -> bool:
        return self.narrator.is_speaking

    @property
    def is_paused(self) -> bool:
        return self._session.is_paused if self._session else False

    @property
    def is_active(self) -> bool:
        return self._session is not None and is_active(self._state)

    @property
    def speech_available(self) -> bool:
        return self._speech_available

    @property
    def audio_level(self) -> float:
        return self._audio_level

    @property
    def current_question(self) -> Optional[str]:
        return self._current_question

    @property
    def is_processing_question(self) -> bool:
        return self._is_processing_question

    @property
    def is_processing_command(self) -> bool:
        return self._is_processing_command

    def snapshot(self) -> dict:
        """JSON-friendly view of everything the UI shows."""
        session = self._session
        step = self.current_step
        return {
            "state": self._state.value,
            "mode": self._mode.value,
            "recipe": {"id": session.recipe.id, "title": session.recipe.title} if session else None,
            "current_step_index": self.current_step_index,
            "current_step": step.step if step else None,
            "total_steps": self.total_steps,
            "progress": round(self.progress, 3),
            "is_paused": self.is_paused,
            "is_completed": session.is_completed if session else False,
            "is_listening": self.is_listening,
            "is_hands_free": self.is_hands_free,
            "is_speaking": self.is_speaking,
            "speech_available": self._speech_available,
            "audio_level": round(self._audio_level, 3),
            "transcript": self.listener.transcript,
            "current_question": self._current_question,
            "is_processing_question": self._is_processing_question,
            "timers": [t.to_dict() for t in self.active_timers],
            "conversation": [m.to_dict() for m in self.conversation_history],
            "checked_ingredients": sorted(session.checked_ingredients) if session else [],
        }

    # --- Lifecycle ---

    async def initialize_speech(self, enabled: bool = True) -> bool:
        """Bring up speech recognition. On failure the session runs in manual mode."""
        ok = False
        if not enabled:
            logger.info("Microphone disabled in settings")
        else:
            try:
                ok = await self.speech_input.initialize()
            except Exception as e:
                logger.error("Speech recognition failed to initialize: {}", e)

        self._speech_available = ok
        if ok:
            logger.info("Speech recognition ready")
        else:
            logger.warning("Speech recognition unavailable. Continuing in manual mode.")
            self._mode = CookAlongMode.MANUAL
        return ok

    async def start_session(self, recipe: Recipe, mode: Optional[CookAlongMode | str] = None) -> bool:
        """Start cooking ``recipe``: welcome the user and wait for "start".

        Any previous session is torn down first. Step 1 is not narrated
        until the user says "start".
        """
        try:
            await self._teardown()
            if mode is not None:
                self._mode = CookAlongMode(mode)
            if self._mode == CookAlongMode.VOICE and not self._speech_available:
                logger.info("Voice mode requested but speech is unavailable; using manual mode")
                self._mode = CookAlongMode.MANUAL

            session = CookAlongSession(recipe=recipe)
            self._session = session
            self._ensure_dispatcher()
            logger.info("Cook-along started: '{}' ({} steps, {} mode)",
                        recipe.title, session.total_steps, self._mode.value)

            self._set_state(SessionState.WELCOME_PLAYING)
            welcome = build_welcome_message(recipe)
            self._add_message(welcome, ChatMessageRole.ASSISTANT, ChatMessageType.SYSTEM_NOTIFICATION)
            await self.narrator.speak_and_wait(welcome)

            # Exited or restarted while the welcome was playing
            if self._session is not session:
                return False

            self._set_state(SessionState.AWAITING_START)
            if self._mode == CookAlongMode.VOICE:
                await self.start_listening()
            return True
        except Exception as e:
            logger.error("Failed to start cook-along session: {}", e)
            return False

    async def start_first_step(self) -> bool:
        try:
            session = self._session
            if session is None:
                return False
            if self._state != SessionState.AWAITING_START:
                logger.debug("Ignoring start in state {}", self._state.value)
                return False

            if session.total_steps == 0:
                logger.warning("Recipe '{}' has no instructions", session.recipe.title)
                await self.complete_session()
                return True

            session.current_step_index = 0
            self._set_state(SessionState.STEP_IN_PROGRESS)
            await self._speak_current_step(interrupt=True, scan_timers=True)
            return True
        except Exception as e:
            logger.error("Failed to start first step: {}", e)
            return False

    async def next_step(self) -> bool:
        """Advance one step. On the last step this completes the session."""
        try:
            session = self._session
            if session is None:
                return False
            if self._state == SessionState.AWAITING_START:
                return await self.start_first_step()
            if self._state not in (SessionState.STEP_IN_PROGRESS, SessionState.PAUSED):
                return False

            if not session.has_next_step:
                await self.complete_session()
                return True

            self._leave_pause()
            session.current_step_index += 1
            logger.info("Next step: {}/{}", session.current_step_index + 1, session.total_steps)
            await self._speak_current_step(interrupt=True, scan_timers=True)
            return True
        except Exception as e:
            logger.error("Failed to go to next step: {}", e)
            return False

    async def previous_step(self) -> bool:
        try:
            session = self._session
            if session is None or self._state not in (SessionState.STEP_IN_PROGRESS, SessionState.PAUSED):
                return False
            if not session.has_previous_step:
                logger.debug("Already on the first step")
                return False

            self._leave_pause()
            session.current_step_index -= 1
            logger.info("Previous step: {}/{}", session.current_step_index + 1, session.total_steps)
            await self._speak_current_step(interrupt=True, scan_timers=True)
            return True
        except Exception as e:
            logger.error("Failed to go to previous step: {}", e)
            return False

    async def repeat_step(self) -> bool:
        try:
            if self._session is None or self._state not in (SessionState.STEP_IN_PROGRESS, SessionState.PAUSED):
                return False
            await self._speak_current_step(interrupt=True, scan_timers=False)
            return True
        except Exception as e:
            logger.error("Failed to repeat step: {}", e)
            return False

    async def pause_session(self) -> bool:
        try:
            session = self._session
            if session is None or session.is_paused or self._state != SessionState.STEP_IN_PROGRESS:
                return False

            session.is_paused = True
            running = session.running_timers
            for timer in running:
                timer.pause()
            self._set_state(SessionState.PAUSED)
            logger.info("Session paused ({} timer(s) paused)", len(running))

            self._add_message(PAUSE_MESSAGE, ChatMessageRole.SYSTEM, ChatMessageType.SYSTEM_NOTIFICATION)
            await self.narrator.speak_and_wait(PAUSE_MESSAGE, interrupt=True)
            return True
        except Exception as e:
            logger.error("Failed to pause session: {}", e)
            return False

    async def resume_session(self) -> bool:
        try:
            session = self._session
            if session is None or not session.is_paused:
                return False

            self._leave_pause()
            logger.info("Session resumed")
            self._add_message(RESUME_MESSAGE, ChatMessageRole.SYSTEM, ChatMessageType.SYSTEM_NOTIFICATION)
            await self.narrator.speak_and_wait(RESUME_MESSAGE, interrupt=True)
            await self._speak_current_step(interrupt=False, scan_timers=False)
            return True
        except Exception as e:
            logger.error("Failed to resume session: {}", e)
            return False

    async def ask_question(self, question: str) -> Optional[str]:
        """Answer a free-form question about the recipe and speak the reply.

        Returns:
            The reply, or None if there is no session, another question is
            being answered, or the assistant failed.
        """
        session = self._session
        if session is None or not isinstance(question, str) or not question.strip():
            return None
        if self._is_processing_question:
            logger.info("Still answering '{}', ignoring new question", self._current_question)
            return None

        question = question.strip()
        self._is_processing_question = True
        self._current_question = question
        try:
            history = list(session.conversation_history)
            self._add_message(question, ChatMessageRole.USER)

            reply = await self.assistant.answer(
                question, session.recipe, session.current_step_index, history,
            )
            if not reply or self._session is not session:
                return None

            self._add_message(reply, ChatMessageRole.ASSISTANT)
            await self.narrator.speak_and_wait(reply)
            return reply
        except Exception as e:
            logger.error("Failed to answer question: {}", e)
            return None
        finally:
            self._is_processing_question = False
            self._current_question = None

    async def complete_session(self) -> bool:
        try:
            session = self._session
            if session is None or session.is_completed:
                return False
            if self._state not in (SessionState.AWAITING_START, SessionState.STEP_IN_PROGRESS, SessionState.PAUSED):
                return False

            session.is_completed = True
            session.is_paused = False
            self.timers.cancel_all()
            self._set_state(SessionState.COMPLETED)
            logger.info("Cook-along completed: '{}'", session.recipe.title)

            message = build_completion_message(session.recipe)
            self._add_message(message, ChatMessageRole.ASSISTANT, ChatMessageType.SYSTEM_NOTIFICATION)
            await self.narrator.speak_and_wait(message, interrupt=True)
            return True
        except Exception as e:
            logger.error("Failed to complete session: {}", e)
            return False

    async def exit_gracefully(self) -> None:
        """Say goodbye, tear everything down and publish EXIT_REQUESTED."""
        try:
            if self._session is None and self._state == SessionState.NOT_STARTED:
                return

            self._set_state(SessionState.EXITING)
            # Nothing to hear any more, and the goodbye must not be transcribed
            await self.listener.stop()
            self.timers.cancel_all()

            goodbye = asyncio.create_task(self.narrator.speak_and_wait(GOODBYE_MESSAGE, interrupt=True))
            try:
                await asyncio.wait_for(asyncio.shield(goodbye), timeout=self.config.session.exit_delay_s)
            except asyncio.TimeoutError:
                logger.debug("Goodbye still playing after {}s, cutting it off", self.config.session.exit_delay_s)

            await self._teardown()
            if not goodbye.done():
                goodbye.cancel()
                with suppress(asyncio.CancelledError):
                    await goodbye
            logger.info("Cook-along exited")
        except Exception as e:
            logger.error("Error during exit: {}", e)
            await self._teardown_quietly()
        self.bus.publish(EventType.EXIT_REQUESTED)

    async def end_session(self) -> None:
        """Stop everything immediately, without a goodbye. Idempotent."""
        try:
            if self._session is not None:
                logger.info("Cook-along ended: '{}'", self._session.recipe.title)
            await self._teardown()
        except Exception as e:
            logger.error("Error ending session: {}", e)

    async def close(self) -> None:
        """Release the controller for good (application shutdown)."""
        await self.end_session()
        task, self._dispatcher = self._dispatcher, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    # --- Commands ---

    async def handle_command(self, command: VoiceCommand | str) -> bool:
        """Run one voice command.

        Commands are serialized: while one is being handled, any other is
        ignored and False is returned. The guard is held for at least
        ``command_guard_ms`` after it was taken, which also swallows a
        command the recognizer delivers twice.
        """
        try:
            command = VoiceCommand(command)
        except ValueError:
            logger.warning("Unknown command: {}", command)
            return False

        if self._is_processing_command:
            logger.debug("Command '{}' ignored, another command is in progress", command.value)
            return False

        self._is_processing_command = True
        self._guard_token += 1
        token = self._guard_token
        taken_at = self._clock()
        logger.info("Voice command: {}", command.value)
        try:
            return await self._execute(command)
        except Exception as e:
            logger.error("Command '{}' failed: {}", command.value, e)
            return False
        finally:
            self._schedule_guard_release(token, taken_at)

    async def _execute(self, command: VoiceCommand) -> bool:
        if command == VoiceCommand.START:
            return await self.start_first_step()
        if command == VoiceCommand.NEXT:
            return await self.next_step()
        if command == VoiceCommand.BACK:
            return await self.previous_step()
        if command == VoiceCommand.REPEAT:
            return await self.repeat_step()
        if command == VoiceCommand.PAUSE:
            return await self.pause_session()
        if command == VoiceCommand.RESUME:
            return await self.resume_session()
        if command == VoiceCommand.COMPLETE:
            return await self.complete_session()
        if command == VoiceCommand.EXIT:
            await self.exit_gracefully()
            return True
        if command == VoiceCommand.HELP:
            started = await self.start_listening()
            if started:
                await self.narrator.speak_and_wait(HELP_MESSAGE)
            return started
        if command == VoiceCommand.STOP_LISTENING:
            await self.stop_listening()
            return True
        return False

    def _schedule_guard_release(self, token: int, taken_at: float) -> None:
        remaining = self.config.session.command_guard_ms / 1000 - (self._clock() - taken_at)
        if remaining <= 0:
            self._release_guard(token)
        else:
            asyncio.get_running_loop().call_later(remaining, self._release_guard, token)

    def _release_guard(self, token: int) -> None:
        # A newer command owns the guard now
        if token == self._guard_token:
            self._is_processing_command = False

    # --- Listening & mode ---

    async def start_listening(self) -> bool:
        try:
            if self._session is None:
                return False
            if not self._speech_available:
                logger.info("Cannot start listening: speech recognition unavailable")
                return False
            self._ensure_dispatcher()
            return self.listener.start()
        except Exception as e:
            logger.error("Failed to start listening: {}", e)
            return False

    async def stop_listening(self) -> None:
        try:
            await self.listener.stop()
        except Exception as e:
            logger.error("Failed to stop listening: {}", e)

    async def switch_mode(self, mode: CookAlongMode | str) -> bool:
        try:
            mode = CookAlongMode(mode)
            if mode == CookAlongMode.VOICE and not self._speech_available:
                logger.info("Cannot switch to voice mode: speech recognition unavailable")
                return False
            if mode == self._mode:
                return True

            self._mode = mode
            logger.info("Switched to {} mode", mode.value)
            if mode == CookAlongMode.MANUAL:
                await self.stop_listening()
            elif self._session is not None and is_active(self._state):
                await self.start_listening()
            return True
        except Exception as e:
            logger.error("Failed to switch mode: {}", e)
            return False

    def apply_voice_settings(self, settings: VoiceSettings) -> None:
        try:
            self.speech_output.configure(settings)
        except Exception as e:
            logger.error("Failed to apply voice settings: {}", e)

    # --- Ingredients & timers ---

    def check_ingredient(self, ingredient_id: str) -> bool:
        if self._session is None:
            return False
        self._session.checked_ingredients.add(ingredient_id)
        return True

    def uncheck_ingredient(self, ingredient_id: str) -> bool:
        if self._session is None:
            return False
        self._session.checked_ingredients.discard(ingredient_id)
        return True

    def is_ingredient_checked(self, ingredient_id: str) -> bool:
        return self._session is not None and ingredient_id in self._session.checked_ingredients

    def cancel_timer(self, timer_id: str) -> bool:
        try:
            if self._session is None:
                return False
            timer = self._session.find_timer(timer_id)
            if timer is None or timer.status not in _LIVE:
                return False
            self.timers.cancel(timer_id)
            timer.cancel()
            return True
        except Exception as e:
            logger.error("Failed to cancel timer {}: {}", timer_id, e)
            return False

    # --- Internals ---

    async def _speak_current_step(self, interrupt: bool, scan_timers: bool) -> None:
        session = self._session
        step = session.current_step if session else None
        if step is None:
            return

        text = f"Step {session.current_step_index + 1} of {session.total_steps}: {step.step}"
        self._add_message(text, ChatMessageRole.ASSISTANT, ChatMessageType.STEP_NAVIGATION)

        spoken = text
        if self.rewriter is not None and self.config.voice.natural_speech:
            spoken = await self.rewriter.rewrite(text)

        await self.narrator.speak_and_wait(spoken, interrupt=interrupt)
        if scan_timers and self._session is session:
            await self._check_and_create_timer(step)

    async def _check_and_create_timer(self, step: InstructionStep) -> Optional[StepTimer]:
        session = self._session
        seconds = detect_timer_duration(step.step)
        if session is None or not seconds:
            return None

        step_number = session.current_step_index + 1
        existing = next(
            (t for t in session.active_timers if t.step_number == step_number and t.status in _LIVE),
            None,
        )
        if existing is not None:
            logger.debug("Step {} already has a timer", step_number)
            return existing

        timer = StepTimer(
            step_number=step_number,
            duration=seconds,
            description=describe_timer(step.step, seconds),
            clock=self._clock,
        )
        session.active_timers.append(timer)
        self.timers.start(timer)

        announcement = f"I've started a timer for {format_duration(seconds)}."
        self._add_message(announcement, ChatMessageRole.ASSISTANT, ChatMessageType.TIMER_ALERT)
        await self.narrator.speak_and_wait(announcement)
        return timer

    def _leave_pause(self) -> None:
        session = self._session
        if session is None or not session.is_paused:
            return
        session.is_paused = False
        for timer in session.paused_timers:
            timer.resume()
        self._set_state(SessionState.STEP_IN_PROGRESS)

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_utterances(), name="utterance-dispatcher")

    async def _dispatch_utterances(self) -> None:
        while True:
            utterance = await self.listener.utterances.get()
            try:
                if self._session is None:
                    continue
                if utterance.is_question:
                    await self.ask_question(utterance.text)
                else:
                    await self.handle_command(utterance.command)
            except Exception as e:
                logger.error("Failed to handle '{}': {}", utterance.text, e)
            finally:
                # Replies are spoken by now; the listening loop may resume
                utterance.finish()

    async def _on_timer_finished(self, event: Event) -> None:
        session = self._session
        data = event.data.get("timer", {})
        if session is None or session.find_timer(data.get("id", "")) is None:
            return

        text = f"Timer finished! {data.get('description', 'Your timer')} is done."
        self._add_message(text, ChatMessageRole.ASSISTANT, ChatMessageType.TIMER_ALERT)
        # Queues behind any narration in progress
        await self.narrator.speak_and_wait(text)

    def _on_audio_level(self, event: Event) -> None:
        self._audio_level = event.data.get("level", 0.0)

    def _on_hands_free_disabled(self, event: Event) -> None:
        self._speech_available = False
        self._mode = CookAlongMode.MANUAL
        if self._session is not None:
            self._add_message(
                SPEECH_UNAVAILABLE_MESSAGE, ChatMessageRole.SYSTEM, ChatMessageType.SYSTEM_NOTIFICATION,
            )

    def _add_message(
        self,
        content: str,
        role: ChatMessageRole,
        type: ChatMessageType = ChatMessageType.TEXT,
    ) -> Optional[ChatMessage]:
        if self._session is None:
            return None
        message = self._session.add_message(content, role, type)
        self.bus.publish(EventType.MESSAGE_ADDED, message=message.to_dict())
        return message

    async def _teardown(self) -> None:
        await self.listener.stop()
        self.listener.drain()
        self.listener.debouncer.reset()
        await self.narrator.stop()
        self.timers.cancel_all()
        if self._session is not None:
            for timer in self._session.active_timers:
                if timer.status in _LIVE:
                    timer.cancel()
        self._session = None
        self._current_question = None
        self._is_processing_question = False
        self._audio_level = 0.0
        self._set_state(SessionState.NOT_STARTED)

    async def _teardown_quietly(self) -> None:
        try:
            await self._teardown()
        except Exception as e:
            logger.error("Teardown failed: {}", e)
            self._session = None
            self._state = SessionState.NOT_STARTED

    def _set_state(self, target: SessionState) -> None:
        try:
            check_transition(SESSION_TRANSITIONS, self._state, target)
        except InvalidTransitionError as e:
            logger.warning("Session: {}", e)
            return
        if target == self._state:
            return
        previous, self._state = self._state, target
        logger.debug("Session state: {} -> {}", previous.value, target.value)
        self.bus.publish(EventType.STATE_CHANGED, state=target.value, previous=previous.value)
