"""
Base-Class Graph Builder
=========================

Turns the base descriptors of a class ``type_info`` into
:class:`~ancestry.analyzers.typeinfo.BaseClass` edges:

* ``__class_type_info`` has no bases.
* ``__si_class_type_info`` holds one public, non-virtual base at
  offset 0::

      [vptr][name][base type_info *]

* ``__vmi_class_type_info`` holds a flag word, a count and an array of
  ``__base_class_type_info`` descriptors::

      [vptr][name][u32 flags][u32 count]{[base type_info *][long offset_flags]}*

  ``offset_flags`` packs ``__virtual_mask`` (bit 0), ``__public_mask``
  (bit 1) and, from bit 8 up, the signed offset of the base sub-object
  (for virtual bases, the vtable offset of the vbase offset instead).

References:
    - Itanium C++ ABI, section 2.9.5 (RTTI Layout).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ancestry.analyzers.typeinfo import BaseClass, ClassTypeInfo
from ancestry.core.errors import MalformedTypeInfo
from ancestry.core.models import BaseFlags, TypeInfoKind, VmiFlags

if TYPE_CHECKING:
    from ancestry.core.session import AnalysisSession

_OFFSET_SHIFT: int = 8
_VMI_HEADER_SIZE: int = 8


def _base_at(session: AnalysisSession, owner: ClassTypeInfo, field: int) -> ClassTypeInfo:
    target = session.image.resolve_pointer(field)
    if target is None:
        raise MalformedTypeInfo(owner.address, field, "holds no resolvable base pointer")
    base = session.type_info_at(target)
    if base is None:
        raise MalformedTypeInfo(
            owner.address, field, f"points at {target:#x}, which is not a class type_info"
        )
    return base


def vmi_flags(session: AnalysisSession, owner: ClassTypeInfo) -> VmiFlags:
    """``__flags`` word of a multiple/virtual ``type_info``."""
    if owner.kind != TypeInfoKind.MULTIPLE_OR_VIRTUAL:
        return VmiFlags.NONE
    image = session.image
    raw = image.read_int(owner.address + 2 * image.pointer_size, 4)
    return VmiFlags(raw & 0x3) if raw is not None else VmiFlags.NONE


def parse_base_graph(session: AnalysisSession, owner: ClassTypeInfo) -> tuple[BaseClass, ...]:
    """Direct bases of *owner* in descriptor order.

    Raises:
        MalformedTypeInfo: a base field does not identify as a class
            ``type_info`` or the base count is out of bounds.
    """
    image = session.image
    ptr = image.pointer_size
    kind = owner.kind

    if kind == TypeInfoKind.BASE:
        return ()

    if kind == TypeInfoKind.SINGLE:
        base = _base_at(session, owner, owner.address + 2 * ptr)
        return (BaseClass(type_info=base, offset=0, is_virtual=False, is_public=True),)

    if kind == TypeInfoKind.MULTIPLE_OR_VIRTUAL:
        header = owner.address + 2 * ptr
        count = image.read_int(header + 4, 4)
        if count is None:
            raise MalformedTypeInfo(owner.address, header + 4, "has an unreadable base count")
        if count > session.config.max_base_count:
            raise MalformedTypeInfo(owner.address, header + 4, f"has base count {count}")

        edges: list[BaseClass] = []
        descriptor = header + _VMI_HEADER_SIZE
        for _ in range(count):
            base = _base_at(session, owner, descriptor)
            offset_flags = image.read_int(descriptor + ptr, ptr, signed=True)
            if offset_flags is None:
                raise MalformedTypeInfo(owner.address, descriptor + ptr, "has unreadable offset flags")
            flags = BaseFlags(offset_flags & 0x3)
            edges.append(
                BaseClass(
                    type_info=base,
                    offset=offset_flags >> _OFFSET_SHIFT,
                    is_virtual=BaseFlags.VIRTUAL in flags,
                    is_public=BaseFlags.PUBLIC in flags,
                )
            )
            descriptor += 2 * ptr
        return tuple(edges)

    raise ValueError(f"unhandled type_info kind: {kind!r}")


def collect_virtual_parents(owner: ClassTypeInfo) -> tuple[ClassTypeInfo, ...]:
    """Every virtual base reachable from *owner*, in first-seen DFS order.

    Shared sub-graphs (diamonds) are walked once.
    """
    found: dict[int, ClassTypeInfo] = {}
    visited: set[int] = {owner.address}

    def walk(node: ClassTypeInfo) -> None:
        for edge in node.parents:
            parent = edge.type_info
            if edge.is_virtual and parent.address not in found:
                found[parent.address] = parent
            if parent.address in visited:
                continue
            visited.add(parent.address)
            walk(parent)

    walk(owner)
    return tuple(found.values())


def ancestors(owner: ClassTypeInfo) -> list[ClassTypeInfo]:
    """All distinct ancestors of *owner* in DFS order."""
    seen: dict[int, ClassTypeInfo] = {}
    stack = list(reversed(owner.parent_models))
    while stack:
        node = stack.pop()
        if node.address in seen or node.address == owner.address:
            continue
        seen[node.address] = node
        stack.extend(reversed(node.parent_models))
    return list(seen.values())


def base_offsets(owner: ClassTypeInfo) -> list[tuple[ClassTypeInfo, int]]:
    """Non-virtual bases of *owner* with their offset in the complete object.

    Bases reached only through a virtual edge are omitted because their
    position depends on the most-derived class.
    """
    result: list[tuple[ClassTypeInfo, int]] = []
    seen: set[tuple[int, int]] = set()

    def walk(node: ClassTypeInfo, base: int, path: frozenset[int]) -> None:
        for edge in node.parents:
            if edge.is_virtual or edge.type_info.address in path:
                continue
            offset = base + edge.offset
            key = (edge.type_info.address, offset)
            if key in seen:
                continue
            seen.add(key)
            result.append((edge.type_info, offset))
            walk(edge.type_info, offset, path | {edge.type_info.address})

    walk(owner, 0, frozenset({owner.address}))
    return result


def is_abstract(owner: ClassTypeInfo, _seen: Optional[set[int]] = None) -> bool:
    """Whether *owner* cannot be instantiated.

    A class with a vtable is abstract iff one of its slots is the
    pure-virtual marker.  A class without a vtable inherits abstractness
    from any direct parent.
    """
    seen = _seen if _seen is not None else set()
    if owner.address in seen:
        return False
    seen.add(owner.address)

    vtable = owner.vtable
    if vtable.is_valid:
        return vtable.has_pure_virtual
    return any(is_abstract(parent, seen) for parent in owner.parent_models)
