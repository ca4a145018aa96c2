from fastapi import HTTPException, Request, status

from core.controller import CookAlongController


def get_controller(request: Request) -> CookAlongController:
    return request.app.state.controller


async def require_session(request: Request) -> CookAlongController:
    """Dependency: the controller, provided a cook-along session is running."""
    controller = get_controller(request)
    if controller.session is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No cook-along session is running.",
        )
    return controller
