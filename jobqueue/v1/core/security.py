from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from jobqueue.config.settings import AuthMode, settings


@dataclass
class Principal:
    """Represents the caller that owns enqueued jobs."""

    user_id: str
    roles: list[str]


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the dev user
    - dev: Trusts the X-User-ID header set by the fronting service
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-User-ID header is required in dev auth mode",
            )
        return Principal(user_id=x_user_id.strip(), roles=["user"])
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
