"""Dependencies registered by ``main`` and looked up by the routers and repositories."""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

_registry: Dict[str, Callable[..., Any]] = {}


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_user: Callable[..., Any],
    get_optional_current_user: Callable[..., Optional[Any]],
) -> None:
    """Register the connection factory and the bearer-token resolvers."""

    _registry.update(
        get_conn=get_conn,
        get_current_user=get_current_user,
        get_optional_current_user=get_optional_current_user,
    )


def _lookup(name: str) -> Callable[..., Any]:
    try:
        return _registry[name]
    except KeyError:
        raise RuntimeError(f"Application context has not been configured yet: {name}") from None


def get_conn() -> Any:
    return _lookup("get_conn")()


def get_current_user(*, authorization: Optional[str] = None) -> Any:
    return _lookup("get_current_user")(authorization)


def get_optional_current_user(*, authorization: Optional[str] = None) -> Optional[Any]:
    return _lookup("get_optional_current_user")(authorization)
