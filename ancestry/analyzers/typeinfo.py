"""
TypeInfo Identification
========================

Classifies an address as one of the three class ``type_info`` layouts
of the Itanium C++ ABI by looking at the structure's own vptr:

======================================  =========================
vptr points into the vtable of          kind
======================================  =========================
``__cxxabiv1::__class_type_info``       ``TypeInfoKind.BASE``
``__cxxabiv1::__si_class_type_info``    ``TypeInfoKind.SINGLE``
``__cxxabiv1::__vmi_class_type_info``   ``TypeInfoKind.MULTIPLE_OR_VIRTUAL``
======================================  =========================

:func:`identify` is the only place a kind tag is assigned.  The
:class:`ClassTypeInfo` node built on top of a :class:`TypeInfo` is
created once per address by :class:`~ancestry.core.session.AnalysisSession`
and memoizes its derived properties in write-once cells.

References:
    - Itanium C++ ABI, section 2.9.5 (RTTI Layout).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

from ancestry.analyzers.names import type_name as read_type_name
from ancestry.core.models import TypeInfoKind, Vtable, Vtt
from ancestry.image.base import MemoryImage

if TYPE_CHECKING:
    from ancestry.core.session import AnalysisSession, RttiRoots

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Write-once memo cell
# ---------------------------------------------------------------------------

class _WriteOnce(Generic[T]):
    """Memoized value; the first computation to finish wins.

    The computation runs outside the lock so that recursive lookups
    (a class asking for its parents' values) cannot deadlock.
    """

    __slots__ = ("_lock", "_value", "_set")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._set = False

    def get(self, compute: Callable[[], T]) -> T:
        if self._set:
            return self._value  # type: ignore[return-value]
        value = compute()
        with self._lock:
            if not self._set:
                self._value = value
                self._set = True
            return self._value  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# TypeInfo
# ---------------------------------------------------------------------------

class TypeInfo:
    """An identified ``type_info`` structure.

    Equality and hashing use ``(address, kind)`` only.  The mangled name
    is read, and the string materialized in the image, on first access.
    """

    __slots__ = ("_image", "address", "kind", "_name")

    def __init__(self, image: MemoryImage, address: int, kind: TypeInfoKind) -> None:
        self._image = image
        self.address = address
        self.kind = kind
        self._name: _WriteOnce[str] = _WriteOnce()

    @property
    def name_address(self) -> Optional[int]:
        return self._image.resolve_pointer(self.address + self._image.pointer_size)

    @property
    def type_name(self) -> str:
        """Mangled type name without the ``_ZTS`` prefix (``"N2ns3FooE"``)."""
        return self._name.get(lambda: read_type_name(self._image, self.address))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TypeInfo):
            return NotImplemented
        return self.address == other.address and self.kind == other.kind

    def __hash__(self) -> int:
        return hash((self.address, self.kind))

    def __repr__(self) -> str:
        return f"TypeInfo({self.address:#x}, {self.kind.name})"


def identify(image: MemoryImage, roots: RttiRoots, address: int) -> Optional[TypeInfo]:
    """Classify *address* as a class ``type_info`` or return ``None``.

    A relocation at *address* is matched by symbol name; otherwise the
    resolved pointer is compared with the known vtable address points.
    Never raises for unmapped or garbage addresses.
    """
    if address < 0:
        return None
    reloc = image.relocation_at(address)
    if reloc is not None and reloc.symbol is not None:
        kind = roots.kind_for_symbol(reloc.symbol)
    else:
        value = image.resolve_pointer(address)
        kind = roots.kind_for_address(value) if value is not None else None
    if kind is None:
        return None
    return TypeInfo(image, address, kind)


# ---------------------------------------------------------------------------
# ClassTypeInfo
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class BaseClass:
    """One edge of the base-class graph, in descriptor order."""

    type_info: ClassTypeInfo
    offset: int = 0
    is_virtual: bool = False
    is_public: bool = True


class ClassTypeInfo:
    """Canonical per-session node for one class ``type_info``.

    Obtain instances through ``AnalysisSession.type_info_at``; never
    construct them directly, so that each address maps to one node.
    """

    __slots__ = (
        "_session", "type_info", "_parents", "_virtual_parents",
        "_vtable", "_vtt", "_unique_name", "_name",
    )

    def __init__(self, session: AnalysisSession, type_info: TypeInfo) -> None:
        self._session = session
        self.type_info = type_info
        self._parents: _WriteOnce[tuple[BaseClass, ...]] = _WriteOnce()
        self._virtual_parents: _WriteOnce[tuple[ClassTypeInfo, ...]] = _WriteOnce()
        self._vtable: _WriteOnce[Vtable] = _WriteOnce()
        self._vtt: _WriteOnce[Optional[Vtt]] = _WriteOnce()
        self._unique_name: _WriteOnce[str] = _WriteOnce()
        self._name: _WriteOnce[str] = _WriteOnce()

    @property
    def address(self) -> int:
        return self.type_info.address

    @property
    def kind(self) -> TypeInfoKind:
        return self.type_info.kind

    @property
    def type_name(self) -> str:
        return self.type_info.type_name

    @property
    def session(self) -> AnalysisSession:
        return self._session

    @property
    def name(self) -> str:
        """Demangled, fully qualified class name (mangled if undemanglable)."""
        from ancestry.analyzers.names import demangled_name
        return self._name.get(
            lambda: demangled_name(self.type_name, self._session.demangler) or self.type_name
        )

    @property
    def unique_type_name(self) -> str:
        from ancestry.analyzers.names import unique_type_name
        return self._unique_name.get(
            lambda: unique_type_name(self.type_info, self._session.demangler)
        )

    # ------------------------------------------------------------------ #
    #  Base-class graph
    # ------------------------------------------------------------------ #

    @property
    def parents(self) -> tuple[BaseClass, ...]:
        """Direct bases in descriptor order.

        Raises:
            MalformedTypeInfo: a descriptor does not reference a class.
        """
        from ancestry.analyzers.base_graph import parse_base_graph
        return self._parents.get(lambda: parse_base_graph(self._session, self))

    @property
    def parent_models(self) -> tuple[ClassTypeInfo, ...]:
        return tuple(edge.type_info for edge in self.parents)

    @property
    def has_parent(self) -> bool:
        return bool(self.parents)

    @property
    def virtual_parents(self) -> tuple[ClassTypeInfo, ...]:
        """Every virtual base reachable from this class, first-seen order."""
        from ancestry.analyzers.base_graph import collect_virtual_parents
        return self._virtual_parents.get(lambda: collect_virtual_parents(self))

    @property
    def abstract(self) -> bool:
        from ancestry.analyzers.base_graph import is_abstract
        return is_abstract(self)

    # ------------------------------------------------------------------ #
    #  Tables
    # ------------------------------------------------------------------ #

    @property
    def vtable(self) -> Vtable:
        """The class vtable, or ``NO_VTABLE`` when none can be found."""
        from ancestry.analyzers.vtable import find_vtable
        return self._vtable.get(lambda: find_vtable(self._session, self))

    @property
    def vtt(self) -> Optional[Vtt]:
        from ancestry.analyzers.vtt import find_vtt
        return self._vtt.get(lambda: find_vtt(self._session, self, self.vtable))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClassTypeInfo):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __repr__(self) -> str:
        return f"ClassTypeInfo({self.address:#x}, {self.kind.name})"
