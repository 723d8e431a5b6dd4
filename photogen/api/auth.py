"""Authentication helpers and route dependencies."""

from fastapi import Depends, Header, HTTPException, Request, status


def require_internal_token(
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="X-Internal-Token"),
) -> None:
    """
    Protect worker-facing endpoints with the shared internal token.

    Only the dispatcher knows the token, so user traffic cannot start workers.
    """

    expected_token = request.app.state.settings.internal_token
    if not expected_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal token is not configured.",
        )

    if x_internal_token != expected_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token.",
        )


def require_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Return the caller id set by the authenticating gateway in front of the API."""

    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity.",
        )
    return x_user_id


InternalAuthDependency = Depends(require_internal_token)
UserIdDependency = Depends(require_user_id)
