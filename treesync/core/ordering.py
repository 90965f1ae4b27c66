"""Batch ordering and coalescing for tree patches.

``order_patches``          stable sort by structural depth (parents first)
``coalesce_prop_patches``  group runs of leaf prop writes to one element so
                           the group is applied with a single element copy
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from treesync.protocol.events import Patch

_PROP_WRITE_OPS = frozenset({"set", "add", "replace"})


def path_depth(patch: Patch) -> int:
    """Number of pointer segments (``/root`` → 1, ``/elements/a/props/x`` → 4)."""
    return len(patch.segments)


def order_patches(patches: Iterable[Patch]) -> list[Patch]:
    """Sort shallower paths first; insertion order breaks ties."""
    return sorted(patches, key=path_depth)


def prop_write_target(patch: Patch) -> str | None:
    """Element key for a leaf prop write (``/elements/{k}/props/{name}``), else ``None``."""
    if patch.op not in _PROP_WRITE_OPS:
        return None
    segs = patch.segments
    if len(segs) == 4 and segs[0] == "elements" and segs[2] == "props":
        return segs[1]
    return None


def coalesce_prop_patches(patches: Sequence[Patch]) -> list[list[Patch]]:
    """Split ``patches`` into application groups.

    Consecutive leaf prop writes to the same element form one group; every
    other patch is a group of one.  Flattening the result gives back
    ``patches`` unchanged.
    """
    groups: list[list[Patch]] = []
    run_key: str | None = None
    for patch in patches:
        target = prop_write_target(patch)
        if target is not None and target == run_key:
            groups[-1].append(patch)
            continue
        groups.append([patch])
        run_key = target
    return groups
