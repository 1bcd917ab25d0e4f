"""FastAPI dependencies for the alert endpoints.

Dependencies:
  get_current_actor       → decode the bearer JWT into an Actor {id, role}
  get_engine              → the AlertEngine living on app.state
  require_permission(...) → restrict to actors whose role holds the permissions
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from stockalert.auth.jwt import decode_token
from stockalert.middleware.exceptions import PermissionDeniedError
from stockalert.schemas.alerts import Actor
from stockalert.services.engine import AlertEngine

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    payload = decode_token(token)
    user_id: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if not user_id or not role or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Actor(id=user_id, role=role)


def get_engine(request: Request) -> AlertEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Alert engine not started",
        )
    return engine


def require_permission(*perms: str):
    """Dependency factory — restrict to actors holding ALL listed permissions.

    Usage:
        @router.post("/cleanup")
        async def cleanup(actor: Actor = Depends(require_permission("alerts.cleanup"))):
            ...
    """
    async def _check(
        actor: Actor = Depends(get_current_actor),
        engine: AlertEngine = Depends(get_engine),
    ) -> Actor:
        missing = [p for p in perms if not engine.guard.authorize(actor.role, p)]
        if missing:
            raise PermissionDeniedError(f"Missing permissions: {', '.join(missing)}")
        return actor

    return _check
