from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, status
from sentry_sdk import set_tag, set_user
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class CallerIdentity:
    """Identity forwarded by the API gateway after authentication."""

    user_id: str
    role: str = "user"
    email: str | None = None
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_coach(self) -> bool:
        return self.role == "coach"


def make_get_db_async(
    async_session_factory: Callable[[], AsyncSession],
) -> Callable[[], AsyncGenerator[AsyncSession, None]]:
    async def get_db() -> AsyncGenerator[AsyncSession, None]:
        async with async_session_factory() as session:
            yield session

    return get_db


def make_get_caller(
    service_name: str,
    header_name: str = "x-user-id",
    error_status_code: int = status.HTTP_401_UNAUTHORIZED,
    error_detail: str = "X-User-Id header required",
) -> Callable[[Request], CallerIdentity]:
    def get_caller(request: Request) -> CallerIdentity:
        user_id = request.headers.get(header_name)
        if not user_id:
            raise HTTPException(status_code=error_status_code, detail=error_detail)
        role = (request.headers.get("x-user-role") or "user").strip().lower()
        set_user({"id": str(user_id)})
        set_tag("service", service_name)
        set_tag("user_role", role)
        return CallerIdentity(
            user_id=str(user_id),
            role=role,
            email=request.headers.get("x-user-email"),
            name=request.headers.get("x-user-name"),
        )

    return get_caller
