"""Authentication dependencies shared by the API routers."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import Header

from ... import app_context


def get_current_user(authorization: Optional[str] = Header(None)) -> Any:
    return app_context.get_current_user(authorization=authorization)


def get_optional_current_user(authorization: Optional[str] = Header(None)) -> Optional[Any]:
    return app_context.get_optional_current_user(authorization=authorization)


__all__ = ["get_current_user", "get_optional_current_user"]
