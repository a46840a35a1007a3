"""
Constructor / Destructor Correlation
=====================================

Assigns functions to the class whose vtable pointer they install.

A constructor (or destructor) of ``C`` stores an address point of
``C``'s vtable into the object it is handed.  For classes with virtual
bases the VTT fixes the order in which those stores happen: entry 0 is
the most-derived class, the following entries belong to base
sub-objects.  Stores matching those entries are attributed to the base
and the base is then correlated in turn, against its own primary table,
with the candidates that are left.

Whether an assigned function is a constructor or a destructor is
decided from its name only (``~`` prefix of the demangled short name).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from ancestry.analyzers.base_graph import ancestors
from ancestry.analyzers.names import short_name
from ancestry.analyzers.typeinfo import ClassTypeInfo
from ancestry.analyzers.vptr_stores import VtablePointerStoreDetector
from ancestry.core.models import (
    ClassRole,
    Function,
    FunctionAssignment,
    StoreAttribution,
    Vtable,
    VptrStore,
    Vtt,
)

if TYPE_CHECKING:
    from ancestry.analyzers.names import Demangler
    from ancestry.core.session import AnalysisSession


def is_destructor(function: Function, demangler: Demangler) -> bool:
    """Whether the demangled short name of *function* starts with ``~``."""
    return bool(function.name) and short_name(function.name, demangler).startswith("~")


def _role(function: Function, demangler: Demangler) -> ClassRole:
    return ClassRole.DESTRUCTOR if is_destructor(function, demangler) else ClassRole.CONSTRUCTOR


def _owner_of(
    session: AnalysisSession,
    owner: ClassTypeInfo,
    vtable: Vtable,
    value: int,
) -> ClassTypeInfo:
    """Class whose sub-object the vptr *value* belongs to."""
    index = vtable.table_containing(value)
    if index is not None:
        base_address = vtable.tables[index].base_address
        if index == 0 or base_address is None:
            return owner
        base = session.type_info_at(base_address)
        return base if base is not None else owner
    for base in ancestors(owner):
        if base.vtable.contains(value):
            return base
    return owner


class _Correlator:
    def __init__(
        self,
        session: AnalysisSession,
        detector: VtablePointerStoreDetector,
        store_cache: Optional[dict[int, list[VptrStore]]] = None,
    ) -> None:
        self.session = session
        self.detector = detector
        self.cache = store_cache if store_cache is not None else {}

    def stores(self, function: Function) -> list[VptrStore]:
        cached = self.cache.get(function.address)
        if cached is None:
            self.session.check_cancelled()
            cached = [s for s in self.detector.stores(function) if s.on_this]
            self.cache[function.address] = cached
        return cached

    def run(
        self,
        owner: ClassTypeInfo,
        vtable: Vtable,
        vtt: Optional[Vtt],
        candidates: list[Function],
        visited: set[int],
    ) -> list[FunctionAssignment]:
        if not vtable.is_valid or vtable.primary is None:
            return []
        visited.add(owner.address)
        has_vtt = vtt is not None and vtt.is_valid()
        targets = set(vtable.table_addresses()) if has_vtt else {vtable.primary.address_point}

        assignments: list[FunctionAssignment] = []
        bases: dict[int, ClassTypeInfo] = {}
        for function in candidates:
            self.session.check_cancelled()
            stores = self.stores(function)
            if not any(s.value in targets for s in stores):
                continue
            if has_vtt:
                attributions = self.attribute_vtt(owner, vtable, vtt, stores, bases)  # type: ignore[arg-type]
            else:
                attributions = [
                    StoreAttribution(
                        site=s.site, value=s.value,
                        class_address=owner.address, class_name=owner.name,
                    )
                    for s in stores if s.value in targets
                ]
            assignments.append(
                FunctionAssignment(
                    function=function,
                    class_address=owner.address,
                    class_name=owner.name,
                    role=_role(function, self.session.demangler),
                    stores=tuple(attributions),
                )
            )

        assignments.sort(key=lambda a: (a.role == ClassRole.DESTRUCTOR, a.function.address))
        taken = {a.function.address for a in assignments}
        remaining = [f for f in candidates if f.address not in taken]
        for base in bases.values():
            if base.address in visited:
                continue
            assignments.extend(self.run(base, base.vtable, None, remaining, visited))
            taken.update(a.function.address for a in assignments)
            remaining = [f for f in remaining if f.address not in taken]
        return assignments

    def attribute_vtt(
        self,
        owner: ClassTypeInfo,
        vtable: Vtable,
        vtt: Vtt,
        stores: list[VptrStore],
        bases: dict[int, ClassTypeInfo],
    ) -> list[StoreAttribution]:
        """Attribute *stores* in VTT entry order."""
        used: set[int] = set()
        result: list[StoreAttribution] = []
        for index, entry in enumerate(vtt.entries):
            store = next((s for s in stores if s.value == entry and s.site not in used), None)
            if store is None:
                continue
            used.add(store.site)
            target = owner if index == 0 else _owner_of(self.session, owner, vtable, entry)
            if target.address != owner.address:
                bases.setdefault(target.address, target)
            result.append(
                StoreAttribution(
                    site=store.site, value=store.value,
                    class_address=target.address, class_name=target.name,
                    vtt_index=index,
                )
            )
        points = set(vtable.table_addresses())
        for store in stores:
            if store.site not in used and store.value in points:
                result.append(
                    StoreAttribution(
                        site=store.site, value=store.value,
                        class_address=owner.address, class_name=owner.name,
                    )
                )
        return result


def correlate(
    session: AnalysisSession,
    owner: ClassTypeInfo,
    vtable: Vtable,
    vtt: Optional[Vtt],
    candidates: Iterable[Function],
    detector: VtablePointerStoreDetector,
    *,
    store_cache: Optional[dict[int, list[VptrStore]]] = None,
) -> list[FunctionAssignment]:
    """Assign constructor/destructor roles among *candidates*.

    Assignments for *owner* come first (constructors before destructors),
    followed by those of the bases reached through the VTT.

    Args:
        store_cache: Detector results keyed by function address, shared
            between calls to avoid disassembling a function twice.

    Raises:
        AnalysisCancelled: the session's token was triggered.
    """
    correlator = _Correlator(session, detector, store_cache)
    return correlator.run(owner, vtable, vtt, list(candidates), set())
