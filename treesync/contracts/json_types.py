"""Canonical type definitions for JSON data and UI-tree dicts.

This module is the **single source of truth for every named data shape**
that crosses the stream boundary as plain JSON.  Import from here; do not
redefine shapes ad hoc.

Element dicts keep the camelCase keys they have on the wire
(``parentKey``, ``_meta.createdTurnId``) because they are stored in the
tree exactly as received, so renderers can consume them without a
conversion pass.

## Entity catalog

JSON primitives:
  JSONScalar        — str | int | float | bool | None
  JSONValue         — recursive JSON value (use sparingly; not in Pydantic)
  JSONObject        — dict[str, JSONValue]

Tree shapes:
  LayoutDict        — element layout (size, grid, resizable)
  ElementMetaDict   — turn tracking metadata stored under ``_meta``
  UIElementDict     — one element of the keyed element map
  FlatElementDict   — one element of a flat list (parentKey linkage, no children)
  UITreeDict        — wire shape of a whole tree {root, elements}
  LayoutUpdates     — partial layout edit for ``update_element_layout``

Patch shapes:
  PatchDict         — wire shape of a JSON-Pointer patch {op, path, value}
"""

from __future__ import annotations

from typing import Literal, Union

from typing_extensions import TypeAlias, TypedDict

JSONScalar: TypeAlias = Union[str, int, float, bool, None]
JSONValue: TypeAlias = Union[JSONScalar, list["JSONValue"], dict[str, "JSONValue"]]
JSONObject: TypeAlias = dict[str, JSONValue]

PatchOp = Literal["add", "replace", "remove", "set"]
TREE_PATCH_OPS: frozenset[str] = frozenset({"add", "replace", "remove", "set"})


class LayoutSizeDict(TypedDict, total=False):
    width: float
    height: float


class LayoutGridDict(TypedDict, total=False):
    column: int
    row: int
    columnSpan: int  # noqa: N815
    rowSpan: int  # noqa: N815


class LayoutDict(TypedDict, total=False):
    """Element layout hints; opaque to the engine apart from layout updates."""

    size: LayoutSizeDict
    grid: LayoutGridDict
    resizable: bool


class ElementMetaDict(TypedDict, total=False):
    """Turn tracking metadata written when a patch is applied with a turn id."""

    turnId: str | None  # noqa: N815
    createdTurnId: str | None  # noqa: N815
    lastModifiedTurnId: str | None  # noqa: N815
    createdAt: int  # noqa: N815
    lastModifiedAt: int  # noqa: N815
    isPlaceholder: bool  # noqa: N815
    autoCreated: bool  # noqa: N815


class UIElementDict(TypedDict, total=False):
    """One element of the keyed element map.

    ``key`` is unique and immutable for the element's lifetime.
    ``children`` holds child keys in render order; every child's
    ``parentKey`` equals this element's ``key``.
    """

    key: str
    type: str
    props: dict[str, JSONValue]
    children: list[str]
    parentKey: str | None  # noqa: N815
    visible: JSONValue
    layout: LayoutDict
    editable: bool | list[str]
    locked: bool
    _meta: ElementMetaDict


class FlatElementDict(TypedDict, total=False):
    """One entry of a flat element list.

    Only an explicit ``parentKey: None`` marks the root candidate; an absent
    ``parentKey`` means "not linked".
    """

    key: str
    type: str
    props: dict[str, JSONValue]
    parentKey: str | None  # noqa: N815
    visible: JSONValue
    layout: LayoutDict
    editable: bool | list[str]
    locked: bool


class UITreeDict(TypedDict):
    """Wire shape of a whole tree."""

    root: str
    elements: dict[str, UIElementDict]


class LayoutUpdates(TypedDict, total=False):
    """Partial layout edit applied by ``update_element_layout``."""

    width: float
    height: float
    column: int
    row: int
    columnSpan: int  # noqa: N815
    rowSpan: int  # noqa: N815
    resizable: bool


class PatchDict(TypedDict, total=False):
    """Wire shape of a JSON-Pointer patch."""

    op: PatchOp
    path: str
    value: JSONValue
