"""Success envelope shared by every router."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


def _dump(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, dict):
        return {key: _dump(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_dump(item) for item in value]
    return value


def ok(data: Any = None, message: str | None = None) -> dict[str, Any]:  # noqa: ANN401
    """Build ``{"success": true, "data"?, "message"?}``.

    Pydantic models anywhere in ``data`` are dumped with their camelCase aliases.
    """
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = _dump(data)
    if message is not None:
        body["message"] = message
    return body
