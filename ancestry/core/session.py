"""
Analysis Session
=================

An :class:`AnalysisSession` is the context shared by every analyzer
while one image is being processed:

* the image and the demangler,
* the RTTI bounds from :class:`~shared.config.RttiConfig`,
* the :class:`RttiRoots` resolved once from the image (the vtables of
  the three ``__cxxabiv1`` type_info classes and the pure-virtual
  marker),
* the arena that maps each ``type_info`` address to its one
  :class:`~ancestry.analyzers.typeinfo.ClassTypeInfo`.

Sessions are safe to share between worker threads.
"""

from __future__ import annotations

import threading
from typing import Optional

from shared.config import RttiConfig

from ancestry.analyzers.names import CxxFiltDemangler, Demangler
from ancestry.analyzers.typeinfo import ClassTypeInfo, TypeInfo, identify
from ancestry.core.errors import CancellationToken
from ancestry.core.models import TypeInfoKind
from ancestry.image.base import MemoryImage


_ROOT_VTABLE_SYMBOLS: dict[str, TypeInfoKind] = {
    "_ZTVN10__cxxabiv117__class_type_infoE": TypeInfoKind.BASE,
    "_ZTVN10__cxxabiv120__si_class_type_infoE": TypeInfoKind.SINGLE,
    "_ZTVN10__cxxabiv121__vmi_class_type_infoE": TypeInfoKind.MULTIPLE_OR_VIRTUAL,
}


class RttiRoots:
    """Well-known addresses every identification compares against.

    Attributes:
        address_points: vptr value of each ``type_info`` kind, i.e. the
            root vtable symbol plus two pointers (offset-to-top and RTTI).
        pure_virtual_address: Address of ``__cxa_pure_virtual`` when it
            is defined in the image.
        pure_virtual_symbol: Symbol name slots are relocated against when
            the marker is imported.
    """

    __slots__ = ("address_points", "pure_virtual_address", "pure_virtual_symbol")

    def __init__(
        self,
        address_points: dict[int, TypeInfoKind],
        pure_virtual_address: Optional[int] = None,
        pure_virtual_symbol: str = "__cxa_pure_virtual",
    ) -> None:
        self.address_points = address_points
        self.pure_virtual_address = pure_virtual_address
        self.pure_virtual_symbol = pure_virtual_symbol

    @classmethod
    def resolve(cls, image: MemoryImage, config: Optional[RttiConfig] = None) -> RttiRoots:
        config = config or RttiConfig()
        points: dict[int, TypeInfoKind] = {}
        for symbol, kind in _ROOT_VTABLE_SYMBOLS.items():
            address = image.symbol_address(symbol)
            if address is not None:
                points[address + 2 * image.pointer_size] = kind
        return cls(
            address_points=points,
            pure_virtual_address=image.symbol_address(config.pure_virtual_symbol),
            pure_virtual_symbol=config.pure_virtual_symbol,
        )

    def kind_for_address(self, value: int) -> Optional[TypeInfoKind]:
        return self.address_points.get(value)

    @staticmethod
    def kind_for_symbol(symbol: str) -> Optional[TypeInfoKind]:
        return _ROOT_VTABLE_SYMBOLS.get(symbol)

    def is_pure_virtual(self, value: Optional[int], symbol: Optional[str] = None) -> bool:
        if symbol is not None and symbol == self.pure_virtual_symbol:
            return True
        return (
            value is not None
            and self.pure_virtual_address is not None
            and value == self.pure_virtual_address
        )


class AnalysisSession:
    """Shared state for analysing one image.

    Usage::

        session = AnalysisSession(image)
        cls = session.type_info_at(0x403D50)
        cls.parents, cls.vtable, cls.abstract

    Args:
        image:     The program to analyse.
        demangler: Name demangler, :class:`CxxFiltDemangler` by default.
        config:    RTTI bounds; defaults apply when omitted.
        roots:     Pre-resolved roots, resolved from *image* when omitted.
        cancel:    Token checked by every scan the session starts.
    """

    def __init__(
        self,
        image: MemoryImage,
        *,
        demangler: Optional[Demangler] = None,
        config: Optional[RttiConfig] = None,
        roots: Optional[RttiRoots] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.image = image
        self.config = config or RttiConfig()
        self.demangler: Demangler = demangler or CxxFiltDemangler()
        self.roots = roots or RttiRoots.resolve(image, self.config)
        self.cancel = cancel
        self._arena: dict[int, ClassTypeInfo] = {}
        self._lock = threading.Lock()

    def check_cancelled(self) -> None:
        if self.cancel is not None:
            self.cancel.check()

    def identify(self, address: int) -> Optional[TypeInfo]:
        """Classify *address*; see :func:`~ancestry.analyzers.typeinfo.identify`."""
        cached = self._arena.get(address)
        if cached is not None:
            return cached.type_info
        return identify(self.image, self.roots, address)

    def type_info_at(self, address: int) -> Optional[ClassTypeInfo]:
        """Canonical class node for *address*, or ``None`` if it is not one."""
        with self._lock:
            cached = self._arena.get(address)
        if cached is not None:
            return cached
        type_info = identify(self.image, self.roots, address)
        if type_info is None:
            return None
        node = ClassTypeInfo(self, type_info)
        with self._lock:
            return self._arena.setdefault(address, node)

    def classes(self) -> list[ClassTypeInfo]:
        """Every class node created so far, by address."""
        with self._lock:
            return [self._arena[a] for a in sorted(self._arena)]

    def is_pure_virtual(self, value: Optional[int], symbol: Optional[str] = None) -> bool:
        return self.roots.is_pure_virtual(value, symbol)
