"""Validation of the members of JSON-RPC requests sent to the API server."""

from __future__ import annotations

from typing import Any, Optional

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

_MAX_UINT = 0xFFFFFFFF
_MAX_UINT64 = 0xFFFFFFFFFFFFFFFF

_MISSING = object()


class ApiError(Exception):
    """A JSON-RPC error carrying a code and a message."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_json(self) -> dict:
        return {"code": self.code, "message": self.message}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (list, dict)) and not value)


def _is_uint(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return 0 <= value <= _MAX_UINT
    if isinstance(value, float):
        return value.is_integer() and 0 <= value <= _MAX_UINT
    return False


def _member(request: dict, name: str, optional: bool) -> Any:
    if name not in request:
        if not optional:
            raise ApiError(INVALID_PARAMS, f"Missing '{name}'")
        return _MISSING
    return request[name]


def _invalid_type(name: str) -> ApiError:
    return ApiError(INVALID_PARAMS, f"Invalid type of value '{name}'")


def get_bool(request: dict, name: str, optional: bool = False) -> Optional[bool]:
    """Return the boolean member ``name``; None when optional and absent."""
    value = _member(request, name, optional)
    if value is _MISSING:
        return None
    if not isinstance(value, bool):
        raise _invalid_type(name)
    return value


def get_uint(request: dict, name: str, optional: bool = False) -> Optional[int]:
    """Return the unsigned 32-bit member ``name``; None when optional and absent."""
    value = _member(request, name, optional)
    if value is _MISSING:
        return None
    if not _is_uint(value):
        raise _invalid_type(name)
    return int(value)


def get_uint64(request: dict, name: str, optional: bool = False) -> Optional[int]:
    """Return the member ``name`` converted to an unsigned 64-bit integer."""
    value = _member(request, name, optional)
    if value is _MISSING:
        return None
    if _is_empty(value):
        raise ApiError(INVALID_PARAMS, f"Empty '{name}'")
    bad = ApiError(INVALID_PARAMS, f"Bad value in '{name}'")
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        if 0 <= value <= _MAX_UINT64:
            return value
        raise bad
    if isinstance(value, float):
        if 0 <= value <= _MAX_UINT64:
            return int(value)
        raise bad
    raise bad


def get_object(request: dict, name: str, optional: bool = False) -> Optional[dict]:
    """Return the non-empty object member ``name``; None when optional and absent."""
    value = _member(request, name, optional)
    if value is _MISSING:
        return None
    if not isinstance(value, dict):
        raise _invalid_type(name)
    if not value:
        raise ApiError(INVALID_PARAMS, f"Empty '{name}'")
    return value


def get_string(request: dict, name: str, optional: bool = False) -> Optional[str]:
    """Return the string member ``name``; None when optional and absent."""
    value = _member(request, name, optional)
    if value is _MISSING:
        return None
    if not isinstance(value, str):
        raise _invalid_type(name)
    return value


def check_write_access(read_only: bool) -> None:
    """Raise when a state-changing method is called on a read-only server."""
    if read_only:
        raise ApiError(METHOD_NOT_FOUND, "Method not available")


def parse_request_id(request: dict) -> int | str:
    """Return the request id, which must be an unsigned integer or a string."""
    value = request.get("id")
    if _is_empty(value):
        raise ApiError(INVALID_REQUEST, "Invalid Request (missing or empty id)")
    if _is_uint(value):
        return int(value)
    if isinstance(value, str):
        return value
    raise ApiError(INVALID_REQUEST, "Invalid Request (id has invalid type)")