"""Pydantic base for everything that crosses the stream boundary.

Frames, events, messages and tool progress are declared with snake_case
attributes and read/written with camelCase keys (``correlationId``,
``toolCallId``).  Tree elements are not models: they stay plain camelCase
dicts (``parentKey``) end to end, so nothing here touches them.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


def to_camel(name: str) -> str:
    """``tool_call_id`` -> ``toolCallId``."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class CamelModel(BaseModel):
    """Accepts either key style on input; ``to_wire()`` emits camelCase only."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """camelCase dict with unset optionals dropped, ready for ``json.dumps``."""
        return self.model_dump(by_alias=True, exclude_none=True)
