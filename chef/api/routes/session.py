from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ValidationError

from api.dependencies import get_controller, require_session
from core.controller import CookAlongController
from core.recipe import Recipe
from core.state import CookAlongMode
from voice.commands import VoiceCommand

router = APIRouter()


class StartRequest(BaseModel):
    recipe: dict
    mode: Optional[CookAlongMode] = None


class CommandRequest(BaseModel):
    command: VoiceCommand


class QuestionRequest(BaseModel):
    question: str


class ModeUpdate(BaseModel):
    mode: CookAlongMode


@router.get("/")
async def get_session(controller: CookAlongController = Depends(get_controller)):
    """Everything the cook-along screen shows."""
    return controller.snapshot()


@router.post("/start")
async def start_session(body: StartRequest, controller: CookAlongController = Depends(get_controller)):
    """Start a session. Returns once the welcome message has been spoken."""
    try:
        recipe = Recipe.from_dict(body.recipe)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    started = await controller.start_session(recipe, body.mode)
    return {"started": started, "session": controller.snapshot()}


@router.post("/command")
async def send_command(body: CommandRequest, controller: CookAlongController = Depends(require_session)):
    handled = await controller.handle_command(body.command)
    return {"command": body.command.value, "handled": handled, "session": controller.snapshot()}


@router.post("/question")
async def ask_question(body: QuestionRequest, controller: CookAlongController = Depends(require_session)):
    answer = await controller.ask_question(body.question)
    return {"question": body.question, "answer": answer}


@router.post("/timers/{timer_id}/cancel")
async def cancel_timer(timer_id: str, controller: CookAlongController = Depends(require_session)):
    if not controller.cancel_timer(timer_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No running timer with that id.")
    return {"timer_id": timer_id, "status": "cancelled"}


@router.put("/ingredients/{ingredient_id}")
async def check_ingredient(ingredient_id: str, controller: CookAlongController = Depends(require_session)):
    controller.check_ingredient(ingredient_id)
    return {"ingredient_id": ingredient_id, "checked": True}


@router.delete("/ingredients/{ingredient_id}")
async def uncheck_ingredient(ingredient_id: str, controller: CookAlongController = Depends(require_session)):
    controller.uncheck_ingredient(ingredient_id)
    return {"ingredient_id": ingredient_id, "checked": False}


@router.put("/mode")
async def switch_mode(body: ModeUpdate, controller: CookAlongController = Depends(get_controller)):
    if not await controller.switch_mode(body.mode):
        return {"error": "Voice mode is unavailable: speech recognition could not be initialized."}
    return {"mode": controller.mode.value, "status": "updated"}


@router.post("/end")
async def end_session(controller: CookAlongController = Depends(get_controller)):
    """Stop immediately, without a goodbye."""
    await controller.end_session()
    return {"status": "ended"}


@router.post("/exit")
async def exit_session(controller: CookAlongController = Depends(require_session)):
    await controller.exit_gracefully()
    return {"status": "exited"}
