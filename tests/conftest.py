"""
Shared fixtures: a builder for synthetic program images laid out the way
GCC emits RTTI, a table-driven demangler and a canned store detector.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Union

import pytest

from shared.config import AncestryConfig, RttiConfig
from shared.logger import AncestryLogger

from ancestry.core.models import (
    Function,
    MemoryBlock,
    Relocation,
    Symbol,
    TypeInfoKind,
    VptrStore,
)
from ancestry.core.session import AnalysisSession
from ancestry.image.memory import BinaryImage

TEXT_BASE = 0x1000
DATA_BASE = 0x10000

ROOT_VTABLES: dict[TypeInfoKind, str] = {
    TypeInfoKind.BASE: "_ZTVN10__cxxabiv117__class_type_infoE",
    TypeInfoKind.SINGLE: "_ZTVN10__cxxabiv120__si_class_type_infoE",
    TypeInfoKind.MULTIPLE_OR_VIRTUAL: "_ZTVN10__cxxabiv121__vmi_class_type_infoE",
}

# (base type_info address, offset, is_virtual, is_public)
BaseSpec = tuple[int, int, bool, bool]
# (offset_to_top, slot values[, vcall offsets])
TableLayout = Union[tuple[int, Sequence[int]], tuple[int, Sequence[int], Sequence[int]]]


def _parse_source_names(mangled: str) -> Optional[list[str]]:
    nested = mangled.startswith("N") and mangled.endswith("E")
    body = mangled[1:-1] if nested else mangled
    parts: list[str] = []
    i = 0
    while i < len(body):
        j = i
        while j < len(body) and body[j].isdigit():
            j += 1
        if j == i:
            return None
        length = int(body[i:j])
        parts.append(body[j:j + length])
        i = j + length
    if not parts or (not nested and len(parts) != 1):
        return None
    return parts


class FakeDemangler:
    """Demangles ``_ZTI`` + simple source names; other names via a table."""

    def __init__(self, names: Optional[dict[str, str]] = None) -> None:
        self.names = dict(names or {})

    def demangle(self, mangled: str) -> Optional[str]:
        if mangled in self.names:
            return self.names[mangled]
        if mangled.startswith("_ZTI"):
            parts = _parse_source_names(mangled[4:])
            if parts:
                return "typeinfo for " + "::".join(parts)
        return None


class FakeDetector:
    """Returns canned vptr stores per function address."""

    def __init__(self, stores: Optional[dict[int, list[VptrStore]]] = None) -> None:
        self.by_function = dict(stores or {})
        self.calls: list[int] = []

    def stores(self, function: Function) -> list[VptrStore]:
        self.calls.append(function.address)
        return list(self.by_function.get(function.address, []))


class ImageBuilder:
    """Lays out code, strings, type_infos and vtables of a fake program.

    Usage::

        b = ImageBuilder()
        b.cxxabi_roots()
        ti = b.type_info("1A")
        f = b.function("_ZN1A1fEv")
        b.vtable("1A", ti, [(0, [f])])
        image = b.build()
    """

    def __init__(self, pointer_size: int = 8) -> None:
        self.ptr = pointer_size
        self.mask = (1 << (8 * pointer_size)) - 1
        self.text = bytearray()
        self.data = bytearray()
        self.symbols: list[Symbol] = []
        self.relocations: list[Relocation] = []
        self.roots: dict[TypeInfoKind, int] = {}

    # ------------------------------------------------------------------ #
    #  Raw layout
    # ------------------------------------------------------------------ #

    @property
    def here(self) -> int:
        return DATA_BASE + len(self.data)

    def align(self, n: Optional[int] = None) -> None:
        n = n or self.ptr
        while len(self.data) % n:
            self.data.append(0)

    def word(self, value: int) -> int:
        address = self.here
        self.data += (value & self.mask).to_bytes(self.ptr, "little")
        return address

    def words(self, *values: int) -> int:
        address = self.here
        for value in values:
            self.word(value)
        return address

    def u32(self, value: int) -> int:
        address = self.here
        self.data += (value & 0xFFFFFFFF).to_bytes(4, "little")
        return address

    def reloc(self, symbol: Optional[str] = None, addend: int = 0) -> int:
        address = self.word(0)
        self.relocations.append(Relocation(address=address, symbol=symbol, addend=addend, type=1))
        return address

    def raw(self, blob: bytes) -> int:
        address = self.here
        self.data += blob
        return address

    def string(self, text: str) -> int:
        return self.raw(text.encode() + b"\x00")

    def symbol(self, name: str, address: int, size: int = 0, *,
               is_function: bool = False, defined: bool = True) -> None:
        self.symbols.append(
            Symbol(name=name, address=address, size=size, is_function=is_function, defined=defined)
        )

    def function(self, name: str, code: bytes = b"\xc3") -> int:
        address = TEXT_BASE + len(self.text)
        self.text += code
        while len(self.text) % 16:
            self.text.append(0xCC)
        self.symbol(name, address, len(code), is_function=True)
        return address

    # ------------------------------------------------------------------ #
    #  RTTI
    # ------------------------------------------------------------------ #

    def cxxabi_roots(self) -> dict[TypeInfoKind, int]:
        """Define the three ``__cxxabiv1`` vtables; returns address points."""
        for kind, name in ROOT_VTABLES.items():
            self.align()
            start = self.words(0, 0, 0, 0)
            self.symbol(name, start, 4 * self.ptr)
            self.roots[kind] = start + 2 * self.ptr
        return dict(self.roots)

    def type_info(
        self,
        name: str,
        kind: TypeInfoKind = TypeInfoKind.BASE,
        bases: Sequence[Union[int, BaseSpec]] = (),
        flags: int = 0,
        *,
        symbol: bool = True,
    ) -> int:
        name_address = self.string(name)
        self.align()
        address = self.word(self.roots[kind])
        self.word(name_address)
        if kind == TypeInfoKind.SINGLE:
            self.word(bases[0])  # type: ignore[arg-type]
        elif kind == TypeInfoKind.MULTIPLE_OR_VIRTUAL:
            self.u32(flags)
            self.u32(len(bases))
            for entry in bases:
                base, offset, is_virtual, is_public = entry  # type: ignore[misc]
                self.word(base)
                self.word((offset << 8) | int(is_virtual) | (int(is_public) << 1))
        if symbol:
            self.symbol("_ZTI" + name, address, self.here - address)
        return address

    def vtable(
        self,
        name: str,
        type_info: int,
        tables: Iterable[TableLayout],
        vbase_offsets: Sequence[int] = (),
        *,
        symbol: bool = True,
    ) -> list[int]:
        """Emit a vtable group; returns the address point of each table."""
        self.align()
        start = self.here
        points: list[int] = []
        for index, layout in enumerate(tables):
            offset_to_top, slots = layout[0], layout[1]
            vcalls = layout[2] if len(layout) > 2 else ()  # type: ignore[misc]
            if index == 0:
                self.words(*vbase_offsets)
            self.words(*vcalls)
            self.word(offset_to_top)
            self.word(type_info)
            points.append(self.here)
            self.words(*slots)
        if symbol:
            self.symbol("_ZTV" + name, start, self.here - start)
        return points

    def build(self, **kwargs: object) -> BinaryImage:
        blocks = [MemoryBlock(name=".data", start=DATA_BASE, data=bytes(self.data),
                              size=len(self.data), writable=True)]
        if self.text:
            blocks.append(MemoryBlock(name=".text", start=TEXT_BASE, data=bytes(self.text),
                                      size=len(self.text), executable=True))
        return BinaryImage(
            blocks, self.symbols, self.relocations, pointer_size=self.ptr, **kwargs  # type: ignore[arg-type]
        )


def make_session(image: BinaryImage, demangler: Optional[FakeDemangler] = None, **kwargs: object) -> AnalysisSession:
    return AnalysisSession(image, demangler=demangler or FakeDemangler(), **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def builder() -> ImageBuilder:
    b = ImageBuilder()
    b.cxxabi_roots()
    return b


@pytest.fixture
def demangler() -> FakeDemangler:
    return FakeDemangler()


@pytest.fixture
def quiet_logger() -> AncestryLogger:
    return AncestryLogger("test", console_output=False)


@pytest.fixture
def config() -> AncestryConfig:
    cfg = AncestryConfig(rtti=RttiConfig())
    cfg.global_settings.max_workers = 2
    return cfg


class VirtualBasesScenario:
    """``struct A {virtual f}; struct B {virtual h}; struct D : virtual A, virtual B {virtual g}``.

    D's vtable group carries two vbase offsets, a primary table and one
    secondary table per virtual base; its VTT has three entries.
    """

    def __init__(self, b: ImageBuilder) -> None:
        self.builder = b
        self.a_f = b.function("_ZN1A1fEv")
        self.b_h = b.function("_ZN1B1hEv")
        self.d_g = b.function("_ZN1D1gEv")
        self.a_ctor = b.function("_ZN1AC2Ev")
        self.b_ctor = b.function("_ZN1BC2Ev")
        self.d_ctor = b.function("_ZN1DC1Ev")
        self.d_dtor = b.function("_ZN1DD1Ev")

        self.a = b.type_info("1A")
        self.b = b.type_info("1B")
        self.d = b.type_info(
            "1D",
            TypeInfoKind.MULTIPLE_OR_VIRTUAL,
            [(self.a, -24, True, True), (self.b, -32, True, True)],
        )
        (self.a_point,) = b.vtable("1A", self.a, [(0, [self.a_f])])
        (self.b_point,) = b.vtable("1B", self.b, [(0, [self.b_h])])
        self.d_points = b.vtable(
            "1D",
            self.d,
            [(0, [self.d_g]), (-8, [self.a_f]), (-16, [self.b_h])],
            vbase_offsets=(16, 8),
        )
        b.align()
        self.vtt = b.words(*self.d_points)
        b.symbol("_ZTT1D", self.vtt, 3 * b.ptr)
        b.word(0)

        self.names = {
            "_ZN1A1fEv": "A::f()",
            "_ZN1B1hEv": "B::h()",
            "_ZN1D1gEv": "D::g()",
            "_ZN1AC2Ev": "A::A()",
            "_ZN1BC2Ev": "B::B()",
            "_ZN1DC1Ev": "D::D()",
            "_ZN1DD1Ev": "D::~D()",
        }
        self.stores = {
            self.d_ctor: [
                VptrStore(site=self.d_ctor + 0x30, value=self.d_points[2]),
                VptrStore(site=self.d_ctor + 0x10, value=self.d_points[0]),
                VptrStore(site=self.d_ctor + 0x20, value=self.d_points[1]),
            ],
            self.d_dtor: [VptrStore(site=self.d_dtor + 0x8, value=self.d_points[0])],
            self.a_ctor: [VptrStore(site=self.a_ctor + 0x4, value=self.a_point)],
            self.b_ctor: [VptrStore(site=self.b_ctor + 0x4, value=self.b_point)],
        }


@pytest.fixture
def virtual_bases(builder: ImageBuilder) -> VirtualBasesScenario:
    return VirtualBasesScenario(builder)
