"""
VTT Parser
===========

A Virtual Table Table lists the vptr values that constructors and
destructors of a class with virtual bases install while base
sub-objects are being built.  Entry 0 is always the address point of
the class's primary vtable; later entries point into its secondary
tables, into construction vtables (``_ZTC``) or into the vtables of
its virtual bases.

The table has no length field.  Entries are read until one points
outside every known region, a symbol starts, the block ends or
``max_vtt_entries`` is reached, so the length is best effort.

References:
    - Itanium C++ ABI, section 2.6 (Virtual Table Tables).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ancestry.analyzers.typeinfo import ClassTypeInfo
from ancestry.core.models import Vtable, Vtt

if TYPE_CHECKING:
    from ancestry.core.session import AnalysisSession

VTT_PREFIX: str = "_ZTT"
CONSTRUCTION_VTABLE_PREFIX: str = "_ZTC"


def _regions(session: AnalysisSession, owner: ClassTypeInfo, vtable: Vtable) -> list[tuple[int, int]]:
    regions = [(vtable.address, vtable.end)]
    for base in owner.virtual_parents:
        base_vtable = base.vtable
        if base_vtable.is_valid:
            regions.append((base_vtable.address, base_vtable.end))
    if owner.type_name:
        for symbol in session.image.symbols_with_prefix(CONSTRUCTION_VTABLE_PREFIX + owner.type_name):
            if symbol.size:
                regions.append((symbol.address, symbol.address + symbol.size))
    return regions


def parse_vtt(
    session: AnalysisSession,
    address: int,
    owner: ClassTypeInfo,
    vtable: Vtable,
) -> Optional[Vtt]:
    """Parse the VTT of *owner* at *address*.

    Returns ``None`` unless *owner* has a virtual base, *vtable* is valid
    and the first entry is the primary address point of *vtable*.
    """
    if not owner.virtual_parents or not vtable.is_valid or vtable.primary is None:
        return None
    image = session.image
    ptr = image.pointer_size
    block = image.block_at(address)
    if block is None:
        return None

    regions = _regions(session, owner, vtable)
    entries: list[int] = []
    pos = address
    while len(entries) < session.config.max_vtt_entries and block.contains(pos, ptr):
        session.check_cancelled()
        if pos != address and image.symbols_at(pos):
            break
        value = image.resolve_pointer(pos)
        if value is None or not any(lo <= value < hi for lo, hi in regions):
            break
        entries.append(value)
        pos += ptr

    if not entries or entries[0] != vtable.primary.address_point:
        return None
    return Vtt(address=address, type_info_address=owner.address, entries=tuple(entries))


def find_vtt(session: AnalysisSession, owner: ClassTypeInfo, vtable: Vtable) -> Optional[Vtt]:
    """Locate and parse the VTT of *owner*.

    The ``_ZTT`` symbol is preferred; otherwise each data reference to
    the primary address point is tried.
    """
    if not vtable.is_valid or vtable.primary is None or not owner.virtual_parents:
        return None
    image = session.image
    if owner.type_name:
        symbol = image.symbol_address(VTT_PREFIX + owner.type_name)
        if symbol is not None:
            vtt = parse_vtt(session, symbol, owner, vtable)
            if vtt is not None:
                return vtt

    for reference in image.find_direct_references(
        vtable.primary.address_point, image.pointer_size, session.cancel
    ):
        if vtable.contains(reference):
            continue
        vtt = parse_vtt(session, reference, owner, vtable)
        if vtt is not None:
            return vtt
    return None
