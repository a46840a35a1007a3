"""
Vtable Parser
==============

Parses the vtable group of a class into :class:`~ancestry.core.models.SubTable`
records.  Each sub-table has the Itanium layout::

    [vcall / vbase offsets ...]     optional, small signed integers
    [offset-to-top]                 small signed integer, 0 for the primary
    [type_info *]                   always the owner's type_info
    [slot 0] [slot 1] ...           <- address point, stored into the vptr

Nothing in the binary records how many slots a table has, so the slot
run ends at the first word that cannot be a slot:

* a new sub-table header starts (only looked for when the owner or one
  of its ancestors has several or virtual bases),
* a symbol starts at the word,
* the containing block ends,
* a zero word that does not follow a destructor (GCC emits a null
  deleting destructor for abstract classes),
* a value that is neither code, a known function, an imported symbol
  nor the pure-virtual marker.

These rules are heuristic: a function pointer whose value happens to be
a small integer, or padding that looks like code, will move the
boundary.

References:
    - Itanium C++ ABI, section 2.5 (Virtual Table Layout).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ancestry.analyzers.base_graph import ancestors, base_offsets
from ancestry.analyzers.names import TYPE_INFO_PREFIX, short_name
from ancestry.analyzers.typeinfo import ClassTypeInfo
from ancestry.core.models import (
    NO_VTABLE,
    FunctionSlot,
    MemoryBlock,
    OffsetToTop,
    RttiPointer,
    SubTable,
    TypeInfoKind,
    Vtable,
    VtableEntry,
)

if TYPE_CHECKING:
    from ancestry.core.session import AnalysisSession

VTABLE_PREFIX: str = "_ZTV"
_NON_SLOT_PREFIXES: tuple[str, ...] = ("_ZTI", "_ZTS", "_ZTV", "_ZTT")


class _Header:
    __slots__ = ("start", "address", "offset_to_top", "vcall_offsets")

    def __init__(self, start: int, address: int, offset_to_top: int, vcall_offsets: tuple[int, ...]) -> None:
        self.start = start
        self.address = address
        self.offset_to_top = offset_to_top
        self.vcall_offsets = vcall_offsets


def _has_secondaries(owner: ClassTypeInfo) -> bool:
    """Whether the vtable group of *owner* can hold more than one table.

    A class with a single base at offset 0 gets ``__si_class_type_info``
    even when that base itself has several or virtual bases, so the
    whole hierarchy is checked.
    """
    if owner.virtual_parents:
        return True
    return any(
        node.kind == TypeInfoKind.MULTIPLE_OR_VIRTUAL and node.parents
        for node in (owner, *ancestors(owner))
    )


class _VtableReader:
    """Stateful walk over one candidate vtable group."""

    def __init__(self, session: AnalysisSession, owner: ClassTypeInfo, block: MemoryBlock) -> None:
        self.session = session
        self.image = session.image
        self.owner = owner
        self.block = block
        self.ptr = self.image.pointer_size
        self.limit = session.config.max_offset_to_top
        self.secondaries = _has_secondaries(owner)

    # ------------------------------------------------------------------ #
    #  Words
    # ------------------------------------------------------------------ #

    def small_int(self, address: int) -> Optional[int]:
        """Signed word at *address* if it can be an offset, else ``None``."""
        if not self.block.contains(address, self.ptr) or self.image.relocation_at(address) is not None:
            return None
        value = self.image.read_int(address, self.ptr, signed=True)
        if value is None or abs(value) > self.limit:
            return None
        return value

    def rtti_matches(self, address: int) -> bool:
        """Whether the word at *address* references the owner's type_info."""
        if not self.block.contains(address, self.ptr):
            return False
        reloc = self.image.relocation_at(address)
        if reloc is not None and reloc.symbol is not None:
            if reloc.symbol == TYPE_INFO_PREFIX + self.owner.type_name:
                return True
        target = self.image.resolve_pointer(address)
        if target is None or target == 0:
            return False
        if target == self.owner.address:
            return True
        other = self.session.identify(target)
        return other is not None and bool(other.type_name) and other.type_name == self.owner.type_name

    def header_at(self, address: int, secondary: bool) -> Optional[_Header]:
        offset = self.small_int(address)
        if offset is None or (secondary and offset == 0):
            return None
        if not self.rtti_matches(address + self.ptr):
            return None
        return _Header(address, address, offset, ())

    def match_header(self, start: int, secondary: bool) -> Optional[_Header]:
        """Find a header at *start*, skipping leading vcall/vbase offsets."""
        vcalls: list[int] = []
        pos = start
        for _ in range(self.session.config.max_vcall_offsets + 1):
            if pos != start and self.image.symbols_at(pos):
                return None
            header = self.header_at(pos, secondary)
            if header is not None:
                header.start = start
                header.vcall_offsets = tuple(vcalls)
                return header
            value = self.small_int(pos)
            if value is None:
                return None
            vcalls.append(value)
            pos += self.ptr
        return None

    # ------------------------------------------------------------------ #
    #  Slots
    # ------------------------------------------------------------------ #

    def is_destructor(self, slot: FunctionSlot) -> bool:
        name = slot.function.name if slot.function is not None else slot.symbol
        return bool(name) and short_name(name, self.session.demangler).startswith("~")

    def read_slots(self, start: int) -> tuple[list[VtableEntry], int]:
        image = self.image
        entries: list[VtableEntry] = []
        pos = start
        after_destructor = False
        while self.block.contains(pos, self.ptr):
            if pos != start and image.symbols_at(pos):
                break
            if self.secondaries and self.header_at(pos, secondary=True) is not None:
                break

            reloc = image.relocation_at(pos)
            symbol = reloc.symbol if reloc is not None else None
            value = image.resolve_pointer(pos)

            if self.session.is_pure_virtual(value, symbol):
                entries.append(FunctionSlot(address=value, is_pure_virtual=True, symbol=symbol))
                after_destructor = False
                pos += self.ptr
                continue

            if value == 0 and reloc is None:
                if not after_destructor:
                    break
                if self.secondaries and self.match_header(pos, secondary=True) is not None:
                    break
                entries.append(FunctionSlot(address=None))
                after_destructor = False
                pos += self.ptr
                continue

            function = image.function_at(value) if value is not None else None
            is_code = function is not None or (value is not None and image.is_code_address(value))
            imported = (
                value is None
                and symbol is not None
                and not symbol.startswith(_NON_SLOT_PREFIXES)
            )
            if not (is_code or imported):
                break

            slot = FunctionSlot(address=value, function=function, symbol=symbol)
            entries.append(slot)
            after_destructor = self.is_destructor(slot)
            pos += self.ptr
        return entries, pos

    # ------------------------------------------------------------------ #
    #  Group
    # ------------------------------------------------------------------ #

    def parse(self, address: int) -> Optional[Vtable]:
        max_tables = 1 + len(ancestors(self.owner)) if self.secondaries else 1
        tables: list[SubTable] = []
        pos = address
        while len(tables) < max_tables:
            self.session.check_cancelled()
            if tables and self.image.symbols_at(pos):
                break
            header = self.match_header(pos, secondary=bool(tables))
            if header is None:
                break
            address_point = header.address + 2 * self.ptr
            slots, end = self.read_slots(address_point)
            entries: list[VtableEntry] = [
                OffsetToTop(value=header.offset_to_top),
                RttiPointer(address=self.owner.address),
                *slots,
            ]
            tables.append(
                SubTable(
                    start=header.start,
                    header_address=header.address,
                    address_point=address_point,
                    vcall_offsets=header.vcall_offsets,
                    entries=tuple(entries),
                )
            )
            pos = end
        if not tables:
            return None
        return Vtable(
            address=address,
            type_info_address=self.owner.address,
            tables=tuple(self.assign_bases(tables)),
            end=pos,
        )

    def assign_bases(self, tables: list[SubTable]) -> list[SubTable]:
        """Attach each secondary table to the base sub-object it serves.

        Non-virtual bases are matched by ``-offset_to_top``; the remaining
        tables take the virtual bases in order.
        """
        if len(tables) < 2:
            return tables
        by_offset = [(base.address, offset) for base, offset in base_offsets(self.owner) if offset]
        virtuals = [base.address for base in self.owner.virtual_parents]
        used: set[int] = set()
        result = [tables[0]]
        for table in tables[1:]:
            delta = -table.offset_to_top
            match = next(
                (addr for addr, offset in by_offset if offset == delta and addr not in used),
                None,
            )
            if match is None:
                match = next((addr for addr in virtuals if addr not in used), None)
            if match is not None:
                used.add(match)
            result.append(table.model_copy(update={"base_address": match}))
        return result


def parse_vtable(session: AnalysisSession, address: int, owner: ClassTypeInfo) -> Optional[Vtable]:
    """Parse the vtable group of *owner* starting at *address*.

    *address* is the start of the group (the ``_ZTV`` symbol address),
    vbase offsets included.  Returns ``None`` when no primary header
    referencing *owner* is found there.
    """
    block = session.image.block_at(address)
    if block is None or not block.initialized:
        return None
    return _VtableReader(session, owner, block).parse(address)


def find_vtable(session: AnalysisSession, owner: ClassTypeInfo) -> Vtable:
    """Locate and parse the vtable of *owner*, or return ``NO_VTABLE``.

    The ``_ZTV`` symbol is preferred.  Without one, every data reference
    to the type_info preceded by a zero offset-to-top is tried as a
    primary header; a candidate with at least one slot wins.
    """
    image = session.image
    ptr = image.pointer_size
    name = owner.type_name
    if name:
        symbol = image.symbol_address(VTABLE_PREFIX + name)
        if symbol is not None:
            vtable = parse_vtable(session, symbol, owner)
            if vtable is not None:
                return vtable

    fallback: Optional[Vtable] = None
    for reference in image.find_direct_references(owner.address, ptr, session.cancel):
        session.check_cancelled()
        header = reference - ptr
        if image.relocation_at(header) is not None or image.read_int(header, ptr, signed=True) != 0:
            continue
        vtable = parse_vtable(session, _group_start(session, header), owner)
        if vtable is None or vtable.primary is None or vtable.primary.header_address != header:
            continue
        if vtable.primary.slots:
            return vtable
        if fallback is None:
            fallback = vtable
    return fallback if fallback is not None else NO_VTABLE


def _group_start(session: AnalysisSession, header: int) -> int:
    """Walk back from a primary header over its vbase offsets."""
    image = session.image
    ptr = image.pointer_size
    limit = session.config.max_offset_to_top
    start = header
    for _ in range(session.config.max_vcall_offsets):
        if image.symbols_at(start):
            break
        prev = start - ptr
        if image.relocation_at(prev) is not None:
            break
        value = image.read_int(prev, ptr, signed=True)
        if value is None or value == 0 or abs(value) > limit:
            break
        start = prev
    return start
