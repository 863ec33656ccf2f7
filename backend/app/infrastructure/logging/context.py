from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
_schedule_id_ctx: ContextVar[str | None] = ContextVar("schedule_id", default=None)


def set_request_id(request_id: str | None) -> object:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def reset_request_id(token: object) -> None:
    _request_id_ctx.reset(token)


def set_user_id(user_id: str | None) -> object:
    return _user_id_ctx.set(user_id)


def get_user_id() -> str | None:
    return _user_id_ctx.get()


def reset_user_id(token: object) -> None:
    _user_id_ctx.reset(token)


def set_schedule_id(schedule_id: str | None) -> object:
    return _schedule_id_ctx.set(schedule_id)


def get_schedule_id() -> str | None:
    return _schedule_id_ctx.get()


def reset_schedule_id(token: object) -> None:
    _schedule_id_ctx.reset(token)
