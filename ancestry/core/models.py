"""
Ancestry Data Models
=====================

Pydantic value objects for everything the recovery pipeline reads from
or produces about a binary: memory blocks, symbols and relocations of
the image, vtable entries and sub-tables, VTTs, vtable-pointer stores,
constructor/destructor assignments, and the per-class reports emitted
by the engine.

All models are frozen: once parsed, a vtable or VTT never changes and
can be shared between threads.

References:
    - Itanium C++ ABI, sections 2.5 (Virtual Table Layout), 2.6 (VTT)
      and 2.9.5 (RTTI Layout).
"""

from __future__ import annotations

import enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


_FROZEN = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TypeInfoKind(str, enum.Enum):
    """Inheritance shape of a class ``type_info``.

    The value names the ``__cxxabiv1`` class whose vtable the structure's
    first word points at.
    """
    BASE = "__class_type_info"
    SINGLE = "__si_class_type_info"
    MULTIPLE_OR_VIRTUAL = "__vmi_class_type_info"


class VmiFlags(enum.IntFlag):
    """``__vmi_class_type_info::__flags_masks``."""
    NONE = 0
    NON_DIAMOND_REPEAT = 0x1
    DIAMOND_SHAPED = 0x2


class BaseFlags(enum.IntFlag):
    """Low bits of ``__base_class_type_info::__offset_flags``."""
    NONE = 0
    VIRTUAL = 0x1
    PUBLIC = 0x2


class ClassRole(str, enum.Enum):
    """Role of a function that installs a class's vtable pointer."""
    CONSTRUCTOR = "constructor"
    DESTRUCTOR = "destructor"


class DatumKind(str, enum.Enum):
    """Kind of typed value marked at an address of the image."""
    STRING = "string"


# ---------------------------------------------------------------------------
# Memory image building blocks
# ---------------------------------------------------------------------------

class MemoryBlock(BaseModel):
    """A contiguous, loaded range of the image (usually one ELF section).

    Attributes:
        name: Section name.
        start: First virtual address.
        data: Initialised contents, empty for ``NOBITS`` blocks.
        size: Size in bytes.
        executable: Holds code.
        writable: Writable at run time.
    """
    model_config = _FROZEN

    name: str = ""
    start: int = 0
    data: bytes = b""
    size: int = 0
    executable: bool = False
    writable: bool = False

    @property
    def end(self) -> int:
        return self.start + self.size

    @property
    def initialized(self) -> bool:
        return bool(self.data)

    def contains(self, address: int, length: int = 1) -> bool:
        return self.start <= address and address + length <= self.end


class Symbol(BaseModel):
    """A named address of the image."""
    model_config = _FROZEN

    name: str
    address: int
    size: int = 0
    is_function: bool = False
    defined: bool = True


class Relocation(BaseModel):
    """A relocation applied to a pointer-sized word.

    ``symbol`` is ``None`` for base-relative relocations, in which case
    the relocated value is ``addend``.
    """
    model_config = _FROZEN

    address: int
    symbol: Optional[str] = None
    addend: int = 0
    type: int = 0


class Function(BaseModel):
    """A function of the analysed program, referenced by entry address."""
    model_config = _FROZEN

    address: int
    name: str = ""
    size: int = 0

    @property
    def end(self) -> int:
        return self.address + self.size


class Datum(BaseModel):
    """A typed value marked at an address (for example a C string)."""
    model_config = _FROZEN

    address: int
    length: int
    kind: DatumKind
    value: Any = None

    @property
    def end(self) -> int:
        return self.address + self.length


# ---------------------------------------------------------------------------
# Vtable entries
# ---------------------------------------------------------------------------

class OffsetToTop(BaseModel):
    """Signed distance from a sub-object's vptr to the complete object."""
    model_config = _FROZEN

    value: int


class RttiPointer(BaseModel):
    """Pointer to the ``type_info`` of the class owning the vtable."""
    model_config = _FROZEN

    address: int


class FunctionSlot(BaseModel):
    """One virtual function pointer.

    Attributes:
        address: Resolved target, ``None`` when it points outside the image.
        is_pure_virtual: Target is the pure-virtual-call marker.
        function: Function starting at ``address`` when one is known.
            Always ``None`` for pure slots.
        symbol: Relocation symbol of the slot, if any.
    """
    model_config = _FROZEN

    address: Optional[int] = None
    is_pure_virtual: bool = False
    function: Optional[Function] = None
    symbol: Optional[str] = None


VtableEntry = Union[OffsetToTop, RttiPointer, FunctionSlot]


class SubTable(BaseModel):
    """One ABI sub-vtable: primary, or secondary for a base sub-object.

    Attributes:
        start: First word of the sub-table, vcall offsets included.
        header_address: Address of the offset-to-top word.
        address_point: Address of the first function slot.  This is the
            value a constructor stores into the object's vptr.
        vcall_offsets: vcall/vbase offset words preceding the header,
            nearest-to-header last.
        entries: ``OffsetToTop``, ``RttiPointer`` and the slots, in order.
        base_address: ``type_info`` address of the base sub-object this
            table dispatches for (``None`` for the primary table).
    """
    model_config = _FROZEN

    start: int
    header_address: int
    address_point: int
    vcall_offsets: tuple[int, ...] = ()
    entries: tuple[VtableEntry, ...] = ()
    base_address: Optional[int] = None

    @property
    def offset_to_top(self) -> int:
        head = self.entries[0] if self.entries else None
        return head.value if isinstance(head, OffsetToTop) else 0

    @property
    def slots(self) -> list[FunctionSlot]:
        return [e for e in self.entries if isinstance(e, FunctionSlot)]


class Vtable(BaseModel):
    """A parsed vtable region made of one or more sub-tables.

    Attributes:
        address: Start of the region (``_ZTV`` symbol address).
        type_info_address: Owning class ``type_info``.
        tables: Sub-tables in memory order.
        end: First address past the last parsed slot.
    """
    model_config = _FROZEN

    address: int
    type_info_address: int
    tables: tuple[SubTable, ...] = ()
    end: int = 0

    @property
    def is_valid(self) -> bool:
        return bool(self.tables)

    @property
    def primary(self) -> Optional[SubTable]:
        return self.tables[0] if self.tables else None

    @property
    def has_pure_virtual(self) -> bool:
        return any(slot.is_pure_virtual for t in self.tables for slot in t.slots)

    def table_addresses(self) -> list[int]:
        """Address points of every sub-table, in order."""
        return [t.address_point for t in self.tables]

    def function_tables(self) -> list[list[Optional[Function]]]:
        """Functions of each sub-table; unresolved and pure slots are ``None``."""
        return [[slot.function for slot in t.slots] for t in self.tables]

    def functions(self) -> list[Function]:
        seen: dict[int, Function] = {}
        for table in self.function_tables():
            for fn in table:
                if fn is not None:
                    seen.setdefault(fn.address, fn)
        return list(seen.values())

    def contains_function(self, function: Function) -> bool:
        return any(
            fn is not None and fn.address == function.address
            for table in self.function_tables()
            for fn in table
        )

    def contains(self, address: int) -> bool:
        return self.is_valid and self.address <= address < self.end

    def table_containing(self, address: int) -> Optional[int]:
        """Index of the sub-table whose slot range covers *address*."""
        for idx, table in enumerate(self.tables):
            nxt = self.tables[idx + 1].start if idx + 1 < len(self.tables) else self.end
            if table.address_point <= address < max(nxt, table.address_point + 1):
                return idx
        return None


NO_VTABLE = Vtable(address=-1, type_info_address=-1)


class Vtt(BaseModel):
    """A Virtual Table Table: vptr values installed during construction.

    The entry count is inferred heuristically; callers must tolerate a
    missing or extra trailing entry.
    """
    model_config = _FROZEN

    address: int
    type_info_address: int
    entries: tuple[int, ...] = ()

    def is_valid(self) -> bool:
        return bool(self.entries)


# ---------------------------------------------------------------------------
# Constructor / destructor correlation
# ---------------------------------------------------------------------------

class VptrStore(BaseModel):
    """A store of a pointer-sized constant into an object.

    Attributes:
        site: Address of the storing instruction.
        value: The pointer value written.
        on_this: The destination is the object passed to the function.
    """
    model_config = _FROZEN

    site: int
    value: int
    on_this: bool = True


class StoreAttribution(BaseModel):
    """A vptr store attributed to the class whose vtable it installs."""
    model_config = _FROZEN

    site: int
    value: int
    class_address: int
    class_name: str = ""
    vtt_index: Optional[int] = None


class FunctionAssignment(BaseModel):
    """A function recognised as constructor or destructor of a class."""
    model_config = _FROZEN

    function: Function
    class_address: int
    class_name: str = ""
    role: ClassRole = ClassRole.CONSTRUCTOR
    stores: tuple[StoreAttribution, ...] = ()


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class ImageInfo(BaseModel):
    """Top-level metadata about the analysed image."""
    path: str = ""
    size: int = 0
    arch: str = "unknown"
    bits: int = 0
    endian: str = "little"
    itanium_abi: bool = False
    sha256: str = ""


class BaseClassReport(BaseModel):
    address: int
    name: str = ""
    offset: int = 0
    is_virtual: bool = False
    is_public: bool = True


class SlotReport(BaseModel):
    address: Optional[int] = None
    name: str = ""
    is_pure_virtual: bool = False


class SubTableReport(BaseModel):
    address_point: int
    offset_to_top: int = 0
    base_address: Optional[int] = None
    slots: list[SlotReport] = Field(default_factory=list)


class VtableReport(BaseModel):
    address: int
    tables: list[SubTableReport] = Field(default_factory=list)


class ClassReport(BaseModel):
    """Everything recovered for one class.

    ``error`` is set when the class graph could not be recovered, in
    which case the other fields hold whatever was known before the
    failure.
    """
    address: int
    kind: TypeInfoKind
    type_name: str = ""
    name: str = ""
    parents: list[BaseClassReport] = Field(default_factory=list)
    virtual_parents: list[int] = Field(default_factory=list)
    abstract: bool = False
    vtable: Optional[VtableReport] = None
    vtt: list[int] = Field(default_factory=list)
    assignments: list[FunctionAssignment] = Field(default_factory=list)
    error: str = ""


class HierarchyAnalysisResult(BaseModel):
    """Aggregate result of a whole-image run."""
    info: ImageInfo = Field(default_factory=ImageInfo)
    classes: list[ClassReport] = Field(default_factory=list)
    pure_virtual_address: Optional[int] = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> list[ClassReport]:
        return [c for c in self.classes if c.error]
