"""Tree state store: pure patch application over a keyed element graph.

Design principles:

1. Never mutate the input.  Every function returns a new ``UITree`` (or
   the same object when nothing changed).
2. Structural sharing.  Only the edited elements and their ancestors (via
   the ``parentKey`` chain) get new objects; every other element keeps its
   identity, so ``old.elements[k] is new.elements[k]`` is a valid
   "unchanged" check for renderers.
3. Never raise on bad input.  Unknown paths, missing elements and
   mistyped values are no-ops.
4. Keep the tree valid after every patch: every child key exists (missing
   ones get a ``__placeholder__`` element), ``parentKey`` and ``children``
   agree, no element has two parents, no cycles, and the root has no
   parent.

``TreeStore`` wraps the pure functions in a single-writer handle with a
version counter and change listeners.
"""

from __future__ import annotations

import copy
import logging
import re
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from treesync.config import settings
from treesync.contracts.json_types import (
    FlatElementDict,
    LayoutUpdates,
    UIElementDict,
    UITreeDict,
)
from treesync.core.ordering import coalesce_prop_patches, order_patches
from treesync.protocol.events import Patch

logger = logging.getLogger(__name__)

PLACEHOLDER_TYPE = "__placeholder__"

# Fields a patch may write under /elements/{key}/...; key and parentKey are managed.
EDITABLE_FIELDS: frozenset[str] = frozenset({"props", "type", "visible", "layout", "editable", "locked"})
MANAGED_FIELDS: frozenset[str] = frozenset({"key", "parentKey", "children"})

# Array props scanned (in order) by ``remove_sub_items``.
ARRAY_PROP_NAMES: tuple[str, ...] = (
    "items", "rows", "entries", "cards", "events", "steps", "tasks", "options",
    "data", "children", "nodes", "sections", "flights", "exercises", "meals",
    "messages", "emails", "columns",
)

PatchInput = Union[Patch, Mapping[str, Any], Sequence[Any]]


@dataclass(frozen=True)
class UITree:
    """Immutable tree value: a root key plus the keyed element map.

    ``root`` is ``""`` for an empty tree.  Treat ``elements`` as read-only;
    all edits go through ``apply_patch`` and friends.
    """

    root: str = ""
    elements: Mapping[str, UIElementDict] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> UITree:
        return cls(root="", elements={})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UITree:
        """Build a tree from its wire shape, normalizing element defaults."""
        raw = data.get("elements") or {}
        elements = {str(k): _normalize_element(str(k), v) for k, v in raw.items() if isinstance(v, Mapping)}
        root = data.get("root")
        return cls(root=root if isinstance(root, str) else "", elements=elements)

    def to_dict(self) -> UITreeDict:
        return {"root": self.root, "elements": copy.deepcopy(dict(self.elements))}

    def get(self, key: str) -> Optional[UIElementDict]:
        return self.elements.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.elements

    def __len__(self) -> int:
        return len(self.elements)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize_element(key: str, value: Mapping[str, Any]) -> UIElementDict:
    element: dict[str, Any] = dict(value)
    element["key"] = key
    if not isinstance(element.get("type"), str):
        element["type"] = ""
    props = element.get("props")
    element["props"] = dict(props) if isinstance(props, Mapping) else {}
    element["children"] = _dedupe_keys(element.get("children"))
    parent = element.get("parentKey")
    element["parentKey"] = parent if isinstance(parent, str) else None
    return element  # type: ignore[return-value]


def _dedupe_keys(raw: Any) -> list[str]:
    if not isinstance(raw, (list, tuple)):
        return []
    seen: set[str] = set()
    out: list[str] = []
    for item in raw:
        if isinstance(item, str) and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _placeholder(key: str, parent_key: Optional[str]) -> UIElementDict:
    return {
        "key": key,
        "type": PLACEHOLDER_TYPE,
        "props": {},
        "children": [],
        "parentKey": parent_key,
        "_meta": {"isPlaceholder": True, "autoCreated": True},
    }


class _TreeEdit:
    """Copy-on-write working set over one tree.

    Each element is copied at most once per edit (``writable``), which is
    what makes a coalesced group of prop writes cost one allocation.
    """

    def __init__(self, tree: UITree, turn_id: Optional[str] = None) -> None:
        self.base = tree
        self.root = tree.root
        self.turn_id = turn_id
        self._elements: Optional[dict[str, UIElementDict]] = None
        self._copied: set[str] = set()
        self._created: set[str] = set()
        self.changed = False

    @property
    def elements(self) -> Mapping[str, UIElementDict]:
        return self._elements if self._elements is not None else self.base.elements

    def _map(self) -> dict[str, UIElementDict]:
        if self._elements is None:
            self._elements = dict(self.base.elements)
        return self._elements

    def get(self, key: Optional[str]) -> Optional[UIElementDict]:
        if key is None:
            return None
        return self.elements.get(key)

    def writable(self, key: str) -> UIElementDict:
        """Return this edit's private copy of element ``key`` (must exist)."""
        if key in self._copied:
            return self._map()[key]
        original = self.elements[key]
        element: dict[str, Any] = dict(original)
        element["props"] = dict(original.get("props") or {})
        element["children"] = list(original.get("children") or [])
        if "_meta" in original:
            element["_meta"] = dict(original["_meta"])
        self._map()[key] = element  # type: ignore[assignment]
        self._copied.add(key)
        self.changed = True
        return element  # type: ignore[return-value]

    def put(self, key: str, element: UIElementDict, *, created: bool = False) -> None:
        self._map()[key] = element
        self._copied.add(key)
        if created:
            self._created.add(key)
        self.changed = True

    def delete(self, key: str) -> None:
        self._map().pop(key, None)
        self._copied.discard(key)
        self._created.discard(key)
        self.changed = True

    def set_root(self, root: str) -> None:
        if root != self.root:
            self.root = root
            self.changed = True

    def stamp(self, key: str) -> None:
        """Record turn metadata on an edited element."""
        if self.turn_id is None or key not in self.elements:
            return
        element = self.writable(key)
        meta = dict(element.get("_meta") or {})
        now = _now_ms()
        if key in self._created or "createdTurnId" not in meta:
            meta.setdefault("createdTurnId", self.turn_id)
            meta.setdefault("createdAt", now)
        meta["turnId"] = self.turn_id
        meta["lastModifiedTurnId"] = self.turn_id
        meta["lastModifiedAt"] = now
        element["_meta"] = meta

    def finish(self) -> UITree:
        """Copy the ancestors of every edited element and build the new tree."""
        if not self.changed:
            return self.base
        if self._elements is None:
            return UITree(root=self.root, elements=self.base.elements)
        for key in list(self._copied):
            seen = {key}
            parent = self._elements.get(key, {}).get("parentKey")
            while parent and parent not in seen and parent in self._elements:
                seen.add(parent)
                if parent not in self._copied:
                    self.writable(parent)
                parent = self._elements[parent].get("parentKey")
        return UITree(root=self.root, elements=self._elements)

    # ── structural helpers ──────────────────────────────────────────────

    def is_ancestor_or_self(self, candidate: str, key: str) -> bool:
        """``True`` if ``candidate`` is ``key`` or on ``key``'s parent chain."""
        seen: set[str] = set()
        current: Optional[str] = key
        while current is not None and current not in seen:
            if current == candidate:
                return True
            seen.add(current)
            element = self.get(current)
            current = element.get("parentKey") if element else None
        return False

    def descendants(self, key: str) -> list[str]:
        """Pre-order descendant keys of ``key`` (excluding ``key``), cycle-guarded."""
        out: list[str] = []
        seen = {key}
        stack = list(reversed((self.get(key) or {}).get("children") or []))
        while stack:
            child = stack.pop()
            if child in seen:
                continue
            seen.add(child)
            out.append(child)
            stack.extend(reversed((self.get(child) or {}).get("children") or []))
        return out

    def detach(self, key: str) -> None:
        """Remove ``key`` from its current parent's children list."""
        element = self.get(key)
        parent_key = element.get("parentKey") if element else None
        parent = self.get(parent_key)
        if parent is not None and parent_key is not None and key in (parent.get("children") or []):
            self.writable(parent_key)["children"].remove(key)

    def link_child(self, parent_key: str, child: str, index: Optional[int] = None) -> bool:
        """Place ``child`` under ``parent_key`` (append, or insert at ``index``).

        Creates a placeholder for an unknown child and detaches a known one
        from its previous parent.  Rejects duplicates and cycles.
        """
        parent = self.get(parent_key)
        if parent is None:
            return False
        if child in (parent.get("children") or []):
            return False
        if child == self.root:
            logger.warning(f"⚠️ Rejected root '{child}' as a child of '{parent_key}'")
            return False
        if self.is_ancestor_or_self(child, parent_key):
            logger.warning(f"⚠️ Rejected child '{child}' under '{parent_key}': would create a cycle")
            return False
        existing = self.get(child)
        if existing is None:
            self.put(child, _placeholder(child, parent_key), created=True)
        elif existing.get("parentKey") != parent_key:
            self.detach(child)
            self.writable(child)["parentKey"] = parent_key
        children = self.writable(parent_key)["children"]
        if index is None:
            children.append(child)
        else:
            children.insert(index, child)
        return True

    def remove_subtree(self, key: str, protected_types: Iterable[str] = ()) -> bool:
        """Cascade-remove ``key`` and its descendants.

        Refused (``False``) when the element or any descendant has a
        protected type.
        """
        if self.get(key) is None:
            return False
        doomed = [key, *self.descendants(key)]
        protected = set(protected_types)
        if protected:
            blocked = [k for k in doomed if (self.get(k) or {}).get("type") in protected]
            if blocked:
                logger.warning(f"⚠️ Refusing to remove '{key}': protected element(s) {blocked}")
                return False
        self.detach(key)
        for k in doomed:
            self.delete(k)
        if self.root in doomed:
            self.set_root("")
        return True

    def reconcile_children(self, key: str, new_children: list[str]) -> None:
        """Replace ``key``'s children with ``new_children``; dropped ones are removed.

        New children are linked before dropped subtrees are removed, so a
        grandchild promoted into the list survives its old parent's removal.
        """
        current = list((self.get(key) or {}).get("children") or [])
        if current == new_children:
            return
        for child in new_children:
            if child not in current:
                self.link_child(key, child)
        keep = set(new_children)
        for dropped in current:
            if dropped not in keep:
                self.remove_subtree(dropped)
        element = self.writable(key)
        accepted = set(element["children"])
        element["children"] = [c for c in new_children if c in accepted]


# ═══════════════════════════════════════════════════════════════════════
# Patch application
# ═══════════════════════════════════════════════════════════════════════


def apply_patch(
    tree: UITree,
    patch: PatchInput,
    *,
    turn_id: Optional[str] = None,
    protected_types: Iterable[str] = (),
) -> UITree:
    """Apply one patch and return the new tree (the input object on a no-op)."""
    try:
        patch = Patch.coerce(patch)
    except ValueError as exc:
        # pydantic.ValidationError subclasses ValueError
        logger.warning(f"⚠️ Ignoring unusable patch {patch!r}: {exc}")
        return tree
    edit = _TreeEdit(tree, turn_id)
    _apply_into(edit, patch, tuple(protected_types))
    return edit.finish()


def apply_patches_batch(
    tree: UITree,
    patches: Iterable[PatchInput],
    *,
    turn_id: Optional[str] = None,
    protected_types: Iterable[str] = (),
) -> UITree:
    """Order, coalesce and apply a batch.  Failing patches are logged and skipped."""
    usable: list[Patch] = []
    for raw in patches:
        try:
            usable.append(Patch.coerce(raw))
        except ValueError as exc:
            logger.warning(f"⚠️ Skipping unusable patch {raw!r}: {exc}")
    protected = tuple(protected_types)
    for group in coalesce_prop_patches(order_patches(usable)):
        tree = _apply_group(tree, group, turn_id, protected)
    return tree


def _apply_group(
    tree: UITree,
    group: list[Patch],
    turn_id: Optional[str],
    protected: tuple[str, ...],
) -> UITree:
    edit = _TreeEdit(tree, turn_id)
    try:
        for patch in group:
            _apply_into(edit, patch, protected)
        return edit.finish()
    except Exception as exc:
        if len(group) == 1:
            logger.warning(f"⚠️ Skipping patch {group[0].op} {group[0].path}: {exc}")
            return tree
    # a grouped write failed part-way: redo the group one patch at a time
    for patch in group:
        tree = _apply_group(tree, [patch], turn_id, protected)
    return tree


def _apply_into(edit: _TreeEdit, patch: Patch, protected: tuple[str, ...]) -> None:
    segs = patch.segments
    if segs == ["root"]:
        _apply_root(edit, patch)
    elif len(segs) >= 2 and segs[0] == "elements" and segs[1]:
        key = segs[1]
        rest = segs[2:]
        if not rest:
            _apply_element(edit, key, patch, protected)
        elif rest[0] == "children":
            _apply_children(edit, key, rest[1:], patch, protected)
        elif rest[0] in EDITABLE_FIELDS:
            _apply_field(edit, key, rest, patch)
        elif rest[0] in MANAGED_FIELDS:
            logger.debug(f"Ignoring patch to managed field: {patch.path}")
        else:
            logger.debug(f"Ignoring patch to unknown element field: {patch.path}")
    else:
        logger.debug(f"Ignoring patch to unsupported path: {patch.path}")


def _apply_root(edit: _TreeEdit, patch: Patch) -> None:
    if patch.op == "remove":
        edit.set_root("")
    elif isinstance(patch.value, str):
        element = edit.get(patch.value)
        if element is not None and element.get("parentKey") is not None:
            logger.warning(
                f"⚠️ Refusing root '{patch.value}': it is a child of '{element.get('parentKey')}'"
            )
            return
        edit.set_root(patch.value)


def _apply_element(edit: _TreeEdit, key: str, patch: Patch, protected: tuple[str, ...]) -> None:
    if patch.op == "remove":
        edit.remove_subtree(key, protected)
        return
    if not isinstance(patch.value, Mapping):
        logger.warning(f"⚠️ Element patch {patch.path} needs an object value")
        return

    incoming = _normalize_element(key, patch.value)
    existing = edit.get(key)
    if existing is None:
        element = dict(incoming)
        element["children"] = []
        element["parentKey"] = None
        edit.put(key, element, created=True)  # type: ignore[arg-type]
        wanted_children = incoming["children"]
    elif patch.op == "set":
        element = edit.writable(key)
        managed = {"key": key, "parentKey": existing.get("parentKey"), "children": element["children"]}
        element.clear()
        element.update(incoming)
        element.update(managed)
        wanted_children = incoming["children"]
    else:
        element = edit.writable(key)
        was_placeholder = existing.get("type") == PLACEHOLDER_TYPE
        for name, value in incoming.items():
            if name in MANAGED_FIELDS:
                continue
            if name == "props":
                element["props"] = {**element["props"], **value}
            elif name == "type" and value == "" and "type" not in patch.value:
                continue
            else:
                element[name] = value  # type: ignore[literal-required]
        if was_placeholder and element.get("type") != PLACEHOLDER_TYPE:
            meta = dict(element.get("_meta") or {})
            meta.pop("isPlaceholder", None)
            element["_meta"] = meta  # type: ignore[typeddict-item]
        wanted_children = list(existing.get("children") or [])
        wanted_children += [c for c in incoming["children"] if c not in wanted_children]

    edit.reconcile_children(key, wanted_children)

    if "parentKey" in patch.value:
        _relink_parent(edit, key, patch.value.get("parentKey"))

    edit.stamp(key)


def _relink_parent(edit: _TreeEdit, key: str, parent_key: Any) -> None:
    element = edit.get(key)
    if element is None:
        return
    if element.get("parentKey") == parent_key:
        if parent_key is None or key in ((edit.get(parent_key) or {}).get("children") or []):
            return
    if parent_key is None:
        edit.detach(key)
        edit.writable(key)["parentKey"] = None
        return
    if not isinstance(parent_key, str):
        return
    if key == edit.root:
        logger.warning(f"⚠️ Root '{key}' cannot take parentKey '{parent_key}'; ignored")
        return
    if edit.get(parent_key) is None:
        edit.put(parent_key, _placeholder(parent_key, None), created=True)
    edit.link_child(parent_key, key)


def _parse_index(segment: str) -> Optional[int]:
    return int(segment) if segment.isdigit() else None


def _apply_children(
    edit: _TreeEdit,
    key: str,
    rest: list[str],
    patch: Patch,
    protected: tuple[str, ...],
) -> None:
    element = edit.get(key)
    if element is None:
        logger.debug(f"Ignoring children patch for missing element '{key}'")
        return
    children = list(element.get("children") or [])

    if not rest:
        if patch.op == "remove":
            for child in children:
                edit.remove_subtree(child)
        elif isinstance(patch.value, list):
            edit.reconcile_children(key, _dedupe_keys(patch.value))
        else:
            return
        edit.stamp(key)
        return

    if len(rest) != 1:
        return
    slot = rest[0]

    if slot == "-":
        if patch.op == "add" and isinstance(patch.value, str):
            if edit.link_child(key, patch.value):
                edit.stamp(key)
        return

    index = _parse_index(slot)
    if index is None:
        return

    if patch.op == "add":
        if isinstance(patch.value, str) and index <= len(children):
            if edit.link_child(key, patch.value, index):
                edit.stamp(key)
        return

    if index >= len(children):
        return
    displaced = children[index]

    if patch.op == "remove":
        if edit.remove_subtree(displaced, protected):
            edit.stamp(key)
        return

    value = patch.value
    if not isinstance(value, str) or value == displaced or value in children:
        return
    if edit.is_ancestor_or_self(value, key):
        logger.warning(f"⚠️ Rejected child '{value}' under '{key}': would create a cycle")
        return
    if edit.link_child(key, value, index):
        edit.remove_subtree(displaced)
        edit.stamp(key)


_MISSING = object()


def _apply_field(edit: _TreeEdit, key: str, rest: list[str], patch: Patch) -> None:
    element = edit.get(key)
    if element is None:
        logger.debug(f"Ignoring field patch for missing element '{key}'")
        return
    name, path = rest[0], rest[1:]

    if not path:
        current = element.get(name, _MISSING)
        if patch.op == "remove":
            if name == "type" or current is _MISSING:
                return
            target = edit.writable(key)
            if name == "props":
                target["props"] = {}
            else:
                del target[name]  # type: ignore[misc]
        else:
            if name == "props" and not isinstance(patch.value, Mapping):
                return
            if name == "type" and not isinstance(patch.value, str):
                return
            if current is not _MISSING and current == patch.value:
                return
            value = dict(patch.value) if name == "props" else patch.value
            edit.writable(key)[name] = value  # type: ignore[literal-required]
        edit.stamp(key)
        return

    container = element.get(name, _MISSING)
    if container is _MISSING:
        if patch.op == "remove":
            return
        container = {}
    updated = _set_in(container, path, patch.op, patch.value)
    if updated is _MISSING or updated is container:
        return
    edit.writable(key)[name] = updated  # type: ignore[literal-required]
    edit.stamp(key)


def _set_in(container: Any, path: list[str], op: str, value: Any) -> Any:
    """Copy-on-write nested write.  Returns ``_MISSING`` when the path does not fit."""
    head, tail = path[0], path[1:]

    if isinstance(container, Mapping):
        if tail:
            child = container.get(head, _MISSING)
            if child is _MISSING:
                if op == "remove":
                    return container
                child = {}
            updated = _set_in(child, tail, op, value)
            if updated is _MISSING or updated is child:
                return updated if updated is _MISSING else container
            return {**container, head: updated}
        if op == "remove":
            if head not in container:
                return container
            return {k: v for k, v in container.items() if k != head}
        if head in container and container[head] == value:
            return container
        return {**container, head: value}

    if isinstance(container, list):
        if head == "-":
            if tail or op != "add":
                return _MISSING
            return [*container, value]
        index = _parse_index(head)
        if index is None:
            return _MISSING
        if tail:
            if index >= len(container):
                return _MISSING
            updated = _set_in(container[index], tail, op, value)
            if updated is _MISSING or updated is container[index]:
                return updated if updated is _MISSING else container
            out = list(container)
            out[index] = updated
            return out
        out = list(container)
        if op == "add":
            if index > len(container):
                return _MISSING
            out.insert(index, value)
        elif index >= len(container):
            return _MISSING
        elif op == "remove":
            del out[index]
        else:
            if out[index] == value:
                return container
            out[index] = value
        return out

    return _MISSING


# ═══════════════════════════════════════════════════════════════════════
# Flat lists and traversal
# ═══════════════════════════════════════════════════════════════════════


def flat_to_tree(elements: Iterable[Mapping[str, Any]]) -> UITree:
    """Build a tree from a flat element list (two passes).

    Pass 1 fills the map with empty ``children``.  Pass 2 links every
    element with a string ``parentKey`` into its parent.  Only an explicit
    ``parentKey: None`` makes a root candidate; when there are several, the
    last one wins.  Elements naming an unknown parent, or a parent whose
    chain leads back to themselves, stay unlinked.
    """
    entries = [e for e in elements if isinstance(e, Mapping) and isinstance(e.get("key"), str)]
    by_key: dict[str, UIElementDict] = {}
    root = ""
    candidates: list[str] = []
    for entry in entries:
        key = entry["key"]
        if key in by_key:
            logger.debug(f"Duplicate flat element '{key}': later entry wins")
        element = _normalize_element(key, {k: v for k, v in entry.items() if k != "children"})
        by_key[key] = element
        if "parentKey" in entry and entry["parentKey"] is None:
            candidates.append(key)
            root = key

    if len(candidates) > 1:
        logger.warning(f"⚠️ Multiple root candidates {candidates}; using '{root}'")

    for key, element in by_key.items():
        parent_key = element["parentKey"]
        if parent_key is None:
            continue
        parent = by_key.get(parent_key)
        if parent is None:
            logger.warning(f"⚠️ Element '{key}' names unknown parent '{parent_key}'; left unlinked")
            element["parentKey"] = None
            continue
        if _chain_reaches(by_key, parent_key, key):
            logger.warning(f"⚠️ Element '{key}' under '{parent_key}' would close a cycle; left unlinked")
            element["parentKey"] = None
            continue
        if key not in parent["children"]:
            parent["children"].append(key)

    return UITree(root=root, elements=by_key)


def _chain_reaches(by_key: Mapping[str, UIElementDict], start: str, target: str) -> bool:
    """``True`` if ``target`` is ``start`` or on ``start``'s parentKey chain."""
    seen: set[str] = set()
    current: Optional[str] = start
    while current is not None and current not in seen:
        if current == target:
            return True
        seen.add(current)
        element = by_key.get(current)
        current = element.get("parentKey") if element else None
    return False


def tree_to_flat(tree: UITree) -> list[FlatElementDict]:
    """Flatten in depth-first pre-order from the root.

    Unreachable elements follow in map order without a ``parentKey`` so a
    round trip through ``flat_to_tree`` does not make them root candidates.
    """
    out: list[FlatElementDict] = []
    visited: set[str] = set()

    def emit(key: str, include_null_parent: bool) -> None:
        element = tree.elements[key]
        flat: dict[str, Any] = {k: copy.deepcopy(v) for k, v in element.items() if k != "children"}
        if flat.get("parentKey") is None and not include_null_parent:
            flat.pop("parentKey", None)
        out.append(flat)  # type: ignore[arg-type]

    if tree.root and tree.root in tree.elements:
        stack = [tree.root]
        while stack:
            key = stack.pop()
            if key in visited or key not in tree.elements:
                continue
            visited.add(key)
            emit(key, include_null_parent=key == tree.root)
            stack.extend(reversed(tree.elements[key].get("children") or []))

    for key in tree.elements:
        if key not in visited:
            emit(key, include_null_parent=False)
    return out


def remove_node_from_tree(tree: UITree, key: str) -> UITree:
    """Remove ``key`` and all of its descendants.  Returns a new tree."""
    edit = _TreeEdit(tree)
    edit.remove_subtree(key)
    return edit.finish()


def get_root_element(tree: UITree) -> Optional[UIElementDict]:
    return tree.elements.get(tree.root) if tree.root else None


def get_descendant_keys(tree: UITree, key: str) -> list[str]:
    """All descendant keys of ``key`` in pre-order (``key`` itself excluded)."""
    return _TreeEdit(tree).descendants(key)


def update_element_props(tree: UITree, key: str, updates: Mapping[str, Any]) -> UITree:
    """Shallow-merge ``updates`` into an element's props."""
    if key not in tree.elements or not updates:
        return tree
    edit = _TreeEdit(tree)
    element = edit.writable(key)
    element["props"] = {**element["props"], **updates}
    return edit.finish()


def update_element_layout(tree: UITree, key: str, updates: LayoutUpdates) -> UITree:
    """Apply size/grid/resizable changes to an element's layout."""
    if key not in tree.elements or not updates:
        return tree
    edit = _TreeEdit(tree)
    element = edit.writable(key)
    layout: dict[str, Any] = dict(element.get("layout") or {})
    size = {k: updates[k] for k in ("width", "height") if k in updates}  # type: ignore[literal-required]
    if size:
        layout["size"] = {**(layout.get("size") or {}), **size}
    grid = {k: updates[k] for k in ("column", "row", "columnSpan", "rowSpan") if k in updates}  # type: ignore[literal-required]
    if grid:
        layout["grid"] = {**(layout.get("grid") or {}), **grid}
    if "resizable" in updates:
        layout["resizable"] = updates["resizable"]
    element["layout"] = layout  # type: ignore[typeddict-item]
    return edit.finish()


_ITEM_DEPTH_RE = re.compile(r"^item-(\d+)-(\d+)$")
_PREFIX_INDEX_RE = re.compile(r"^[a-z]+-(\d+)$", re.IGNORECASE)


def _find_indices(items: list[Any], identifiers: Sequence[Union[int, str]]) -> list[int]:
    indices: list[int] = []
    for ident in identifiers:
        if isinstance(ident, int):
            if 0 <= ident < len(items):
                indices.append(ident)
            continue
        idx = next(
            (i for i, item in enumerate(items)
             if isinstance(item, Mapping) and (item.get("id") == ident or item.get("key") == ident)),
            -1,
        )
        if idx == -1:
            match = _ITEM_DEPTH_RE.match(ident) or _PREFIX_INDEX_RE.match(ident)
            if match:
                parsed = int(match.groups()[-1])
                if parsed < len(items):
                    idx = parsed
        if idx != -1:
            indices.append(idx)
    return indices


def remove_sub_items(tree: UITree, key: str, identifiers: Sequence[Union[int, str]]) -> UITree:
    """Remove entries from the first non-empty array prop of an element.

    Identifiers are indices, ``id``/``key`` values, or ``item-{depth}-{index}``
    and ``{prefix}-{index}`` strings.
    """
    element = tree.elements.get(key)
    if element is None or not identifiers:
        return tree
    props = element.get("props") or {}
    for prop_name in ARRAY_PROP_NAMES:
        items = props.get(prop_name)
        if isinstance(items, list) and items:
            doomed = set(_find_indices(items, identifiers))
            if not doomed:
                return tree
            kept = [item for i, item in enumerate(items) if i not in doomed]
            return update_element_props(tree, key, {prop_name: kept})
    return tree


def validate_tree(tree: UITree) -> list[str]:
    """Check structural invariants. Returns list of violations (empty = ok)."""
    violations: list[str] = []
    if tree.root and tree.root not in tree.elements:
        violations.append(f"Root '{tree.root}' is not in the element map")
    root_element = tree.elements.get(tree.root) if tree.root else None
    if root_element is not None and root_element.get("parentKey") is not None:
        violations.append(f"Root '{tree.root}' has parentKey '{root_element.get('parentKey')}'")

    owner: dict[str, str] = {}
    for key, element in tree.elements.items():
        if element.get("key") != key:
            violations.append(f"Element stored under '{key}' has key '{element.get('key')}'")
        children = element.get("children") or []
        if len(children) != len(set(children)):
            violations.append(f"Element '{key}' lists a child more than once")
        for child in children:
            if child not in tree.elements:
                violations.append(f"Element '{key}' references missing child '{child}'")
                continue
            if child in owner and owner[child] != key:
                violations.append(f"Child '{child}' has two parents: '{owner[child]}' and '{key}'")
            owner[child] = key
            if tree.elements[child].get("parentKey") != key:
                violations.append(
                    f"Child '{child}' of '{key}' has parentKey '{tree.elements[child].get('parentKey')}'"
                )
        parent_key = element.get("parentKey")
        if parent_key is not None:
            parent = tree.elements.get(parent_key)
            if parent is None or key not in (parent.get("children") or []):
                violations.append(f"Element '{key}' has parentKey '{parent_key}' but is not its child")

    for key in tree.elements:
        seen: set[str] = set()
        current: Optional[str] = key
        while current is not None and current in tree.elements:
            if current in seen:
                violations.append(f"Cycle through '{key}'")
                break
            seen.add(current)
            current = tree.elements[current].get("parentKey")

    # reachability is only checked once a root exists
    if root_element is not None:
        reachable = {tree.root, *_TreeEdit(tree).descendants(tree.root)}
        for key in tree.elements:
            if key not in reachable:
                violations.append(f"Element '{key}' is not reachable from root '{tree.root}'")
    return violations


# ═══════════════════════════════════════════════════════════════════════
# Stateful handle
# ═══════════════════════════════════════════════════════════════════════

TreeListener = Callable[[UITree], None]


class TreeStore:
    """Single-writer owner of the canonical tree.

    Every committed change bumps ``version`` and notifies listeners with
    the new tree.  No-op patches commit nothing.
    """

    def __init__(
        self,
        tree: Optional[UITree] = None,
        *,
        protected_types: Optional[Iterable[str]] = None,
    ) -> None:
        self._tree = tree if tree is not None else UITree.empty()
        self._version = 0
        self._listeners: list[TreeListener] = []
        self._streaming = False
        self._turn_id: Optional[str] = None
        self.protected_types: tuple[str, ...] = tuple(
            settings.protected_types if protected_types is None else protected_types
        )

    @property
    def tree(self) -> UITree:
        return self._tree

    @property
    def version(self) -> int:
        """Monotonic counter, incremented once per committed change."""
        return self._version

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def turn_id(self) -> Optional[str]:
        """Turn stamped on elements edited while streaming."""
        return self._turn_id

    def set_streaming(self, streaming: bool, turn_id: Optional[str] = None) -> None:
        self._streaming = streaming
        self._turn_id = turn_id if streaming else None
        logger.debug(f"Tree store streaming={streaming} turn={turn_id}")

    def apply(self, patch: PatchInput, *, turn_id: Optional[str] = None) -> UITree:
        new = apply_patch(
            self._tree, patch,
            turn_id=turn_id or self._turn_id,
            protected_types=self.protected_types,
        )
        return self._commit(new)

    def apply_batch(self, patches: Iterable[PatchInput], *, turn_id: Optional[str] = None) -> UITree:
        new = apply_patches_batch(
            self._tree, patches,
            turn_id=turn_id or self._turn_id,
            protected_types=self.protected_types,
        )
        return self._commit(new)

    def reset(self, tree: Union[UITree, Mapping[str, Any], None]) -> UITree:
        """Replace the whole tree (history restore, server snapshot)."""
        if tree is None:
            new = UITree.empty()
        elif isinstance(tree, UITree):
            new = tree
        else:
            new = UITree.from_dict(tree)
        return self._commit(new)

    def clear(self) -> UITree:
        return self._commit(UITree.empty())

    def remove_element(self, key: str) -> UITree:
        return self._commit(remove_node_from_tree(self._tree, key))

    def subscribe(self, listener: TreeListener) -> Callable[[], None]:
        """Register a change listener.  Returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, new: UITree) -> UITree:
        if new is self._tree:
            return new
        self._tree = new
        self._version += 1
        for listener in list(self._listeners):
            listener(new)
        return new
