"""Tests for the hands-free listening loop."""
import asyncio

import pytest

from core.events import EventType
from core.state import ListeningState
from fakes import FakeClock, FakeSpeechInput, FakeSpeechOutput, fast_config, wait_until
from voice.channels import SpeechEvent
from voice.commands import CommandDebouncer, VoiceCommand
from voice.listening import HandsFreeListeningLoop
from voice.narrator import Narrator


def make_loop(bus, speech_input=None, output=None, debouncer=None):
    speech_input = speech_input or FakeSpeechInput()
    narrator = Narrator(output or FakeSpeechOutput(), bus, ms_per_char=80, buffer_s=1.0)
    loop = HandsFreeListeningLoop(speech_input, narrator, bus, fast_config().listening, debouncer=debouncer)
    return loop, speech_input, narrator


async def next_utterance(loop, timeout=1.0, finish=True):
    utterance = await asyncio.wait_for(loop.utterances.get(), timeout=timeout)
    if finish:
        utterance.finish()
    return utterance


class TestHandsFreeListeningLoop:
    @pytest.mark.asyncio
    async def test_final_command_is_queued(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.partial("ne"), SpeechEvent.final("next please"))
        loop.start()

        utterance = await next_utterance(loop)
        assert utterance.command == VoiceCommand.NEXT
        assert utterance.text == "next please"
        assert not utterance.is_question
        await loop.stop()

    @pytest.mark.asyncio
    async def test_unknown_text_becomes_question(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.final("how do I know the onions are soft"))
        loop.start()

        utterance = await next_utterance(loop)
        assert utterance.is_question
        await loop.stop()

    @pytest.mark.asyncio
    async def test_final_chunks_are_joined(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.final("can I use"), SpeechEvent.final("butter instead of oil"))
        loop.start()

        utterance = await next_utterance(loop)
        assert utterance.text == "can I use butter instead of oil"
        await loop.stop()

    @pytest.mark.asyncio
    async def test_duplicate_command_debounced(self, bus):
        debouncer = CommandDebouncer(2000, clock=FakeClock())
        loop, speech_input, _ = make_loop(bus, debouncer=debouncer)
        speech_input.say(SpeechEvent.final("next"))
        speech_input.say(SpeechEvent.final("next"))
        loop.start()

        assert (await next_utterance(loop)).command == VoiceCommand.NEXT
        # Third session opened: both scripted sessions have been finalized
        await wait_until(lambda: speech_input.listen_count >= 3)
        assert loop.utterances.empty()
        await loop.stop()

    @pytest.mark.asyncio
    async def test_single_character_dropped(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.final("a"))
        speech_input.say(SpeechEvent.final("repeat"))
        loop.start()

        assert (await next_utterance(loop)).command == VoiceCommand.REPEAT
        await loop.stop()

    @pytest.mark.asyncio
    async def test_session_end_finalizes(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.partial("pause"), SpeechEvent.done())
        loop.start()

        assert (await next_utterance(loop)).command == VoiceCommand.PAUSE
        await loop.stop()

    @pytest.mark.asyncio
    async def test_permanent_error_disables(self, bus, recorded):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.failure("microphone permission denied", permanent=True))
        loop.start()

        await wait_until(lambda: loop.state == ListeningState.DISABLED)
        assert not loop.is_enabled
        disabled = [e for e in recorded if e.type == EventType.HANDS_FREE_DISABLED]
        assert disabled and "permission" in disabled[0].data["reason"]
        assert speech_input.listen_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_retries(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.failure("no match"))
        speech_input.say(SpeechEvent.final("back"))
        loop.start()

        assert (await next_utterance(loop)).command == VoiceCommand.BACK
        assert loop.is_enabled
        await loop.stop()

    @pytest.mark.asyncio
    async def test_restart_after_disabled(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.failure("recognizer unavailable", permanent=True))
        loop.start()
        await wait_until(lambda: loop.state == ListeningState.DISABLED)

        speech_input.say(SpeechEvent.final("next"))
        loop.start()
        assert (await next_utterance(loop)).command == VoiceCommand.NEXT
        await loop.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, bus):
        loop, speech_input, _ = make_loop(bus)
        loop.start()
        await wait_until(lambda: loop.is_listening)

        await loop.stop()
        await loop.stop()
        assert loop.state == ListeningState.IDLE
        assert not loop.is_enabled
        assert loop.transcript == ""
        assert speech_input.stop_count >= 1

    @pytest.mark.asyncio
    async def test_stop_discards_partial_text(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.partial("how long do I"))
        loop.start()
        await wait_until(lambda: loop.transcript == "how long do I")

        await loop.stop()
        assert loop.transcript == ""
        assert loop.utterances.empty()

    @pytest.mark.asyncio
    async def test_sound_level_published(self, bus, recorded):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.sound_level(0.4), SpeechEvent.sound_level(3.0))
        loop.start()

        await wait_until(lambda: len([e for e in recorded if e.type == EventType.AUDIO_LEVEL]) == 2)
        levels = [e.data["level"] for e in recorded if e.type == EventType.AUDIO_LEVEL]
        assert levels == [0.4, 1.0]
        await loop.stop()

    @pytest.mark.asyncio
    async def test_does_not_listen_while_speaking(self, bus):
        output = FakeSpeechOutput(delay=0.2)
        loop, speech_input, narrator = make_loop(bus, output=output)
        speaking = asyncio.create_task(narrator.speak_and_wait("Step one: chop the onions."))
        await wait_until(lambda: narrator.is_speaking)

        loop.start()
        await asyncio.sleep(0.05)
        assert speech_input.listen_count == 0

        await speaking
        await wait_until(lambda: speech_input.listen_count == 1)
        await loop.stop()

    @pytest.mark.asyncio
    async def test_echo_of_own_speech_ignored(self, bus):
        loop, speech_input, narrator = make_loop(bus)
        await narrator.speak_and_wait("Add the chopped onions to the hot pan and stir well.")
        speech_input.say(SpeechEvent.final("chopped onions hot pan stir well"))
        speech_input.say(SpeechEvent.final("next"))
        loop.start()

        assert (await next_utterance(loop)).command == VoiceCommand.NEXT
        await loop.stop()

    @pytest.mark.asyncio
    async def test_waits_for_utterance_to_be_handled(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.final("how long should the soup simmer"))
        loop.start()

        utterance = await next_utterance(loop, finish=False)
        await asyncio.sleep(0.1)
        assert speech_input.listen_count == 1
        assert not loop.is_listening

        utterance.finish()
        await wait_until(lambda: speech_input.listen_count == 2)
        await loop.stop()

    @pytest.mark.asyncio
    async def test_narration_closes_open_session(self, bus):
        output = FakeSpeechOutput(delay=0.2)
        loop, speech_input, narrator = make_loop(bus, output=output)
        speech_input.say(SpeechEvent.partial("how long do"))
        loop.start()
        await wait_until(lambda: loop.transcript == "how long do")

        speaking = asyncio.create_task(narrator.speak_and_wait("Timer finished! Simmer for 10 minutes is done."))
        await wait_until(lambda: not loop.is_listening)
        assert narrator.is_speaking
        assert loop.transcript == ""
        assert speech_input.stop_count >= 1

        await speaking
        await wait_until(lambda: speech_input.listen_count == 2)
        assert loop.utterances.empty()
        await loop.stop()

    @pytest.mark.asyncio
    async def test_drain_releases_waiting_loop(self, bus):
        loop, speech_input, _ = make_loop(bus)
        speech_input.say(SpeechEvent.final("next"))
        loop.start()
        await wait_until(lambda: not loop.utterances.empty())

        assert loop.drain() == 1
        await wait_until(lambda: speech_input.listen_count == 2)
        await loop.stop()
