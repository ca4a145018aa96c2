from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter()


class ProviderUpdate(BaseModel):
    provider: str  # "claude" or "openai"


class APIKeyUpdate(BaseModel):
    openai: Optional[str] = None
    claude: Optional[str] = None


class VoiceUpdate(BaseModel):
    voice_name: Optional[str] = None
    locale: Optional[str] = None
    speech_rate: Optional[float] = None
    pitch: Optional[float] = None
    volume: Optional[float] = None
    is_premium: Optional[bool] = None
    voice_id: Optional[str] = None
    natural_speech: Optional[bool] = None


class ListeningUpdate(BaseModel):
    silence_timeout_ms: Optional[int] = None
    restart_delay_ms: Optional[int] = None
    post_speech_delay_ms: Optional[int] = None
    command_debounce_ms: Optional[int] = None
    error_retry_delay_ms: Optional[int] = None
    listen_window_s: Optional[float] = None
    response_timeout_s: Optional[float] = None


def _mask(value: str) -> str:
    if not value:
        return value
    return value[:4] + "****" + value[-4:] if len(value) > 8 else "****"


@router.get("/")
async def get_settings(request: Request):
    """Get all current settings, with API keys masked."""
    data = request.app.state.config_manager.config.model_dump()
    data["api_keys"] = {k: _mask(v) for k, v in data.get("api_keys", {}).items()}
    return data


@router.put("/voice")
async def update_voice(body: VoiceUpdate, request: Request):
    """Update voice settings. Applied to the speech output immediately."""
    cm = request.app.state.config_manager
    updates = body.model_dump(exclude_none=True)
    if updates:
        cm.update_nested("voice", **updates)
        controller = request.app.state.controller
        controller.config.voice = cm.config.voice
        controller.apply_voice_settings(cm.config.voice)
    return {"status": "updated", "voice": cm.config.voice.model_dump()}


@router.put("/listening")
async def update_listening(body: ListeningUpdate, request: Request):
    """Update listening timings. Takes effect on the next start."""
    cm = request.app.state.config_manager
    updates = body.model_dump(exclude_none=True)
    if updates:
        cm.update_nested("listening", **updates)
    return {"status": "updated", "listening": cm.config.listening.model_dump(), "restart_required": bool(updates)}


@router.put("/provider")
async def update_provider(body: ProviderUpdate, request: Request):
    """Select the LLM provider used for cooking questions."""
    if body.provider not in ("claude", "openai"):
        return {"error": "Provider must be 'claude' or 'openai'"}
    request.app.state.config_manager.update(provider=body.provider)
    return {"provider": body.provider, "status": "updated"}


@router.put("/api-keys")
async def update_api_keys(body: APIKeyUpdate, request: Request):
    cm = request.app.state.config_manager
    updates = body.model_dump(exclude_none=True)
    if updates:
        cm.update_nested("api_keys", **updates)
    return {"status": "updated"}
