"""
In-Memory Binary Image
=======================

:class:`BinaryImage` holds the loaded sections, symbols and relocations
of one program and implements :class:`~ancestry.image.base.MemoryImage`.

Typed data marks (strings recognised while reading ``type_info`` names)
are the only mutable state.  Marking is idempotent, never overlaps an
existing mark of another kind, and is guarded by a lock so several
classes can be analysed concurrently.
"""

from __future__ import annotations

import bisect
import threading
from collections import defaultdict
from typing import Iterable, Optional, Sequence

from ancestry.core.errors import CancellationToken
from ancestry.core.models import (
    Datum,
    DatumKind,
    Function,
    MemoryBlock,
    Relocation,
    Symbol,
)
from ancestry.image.base import AddressRange

_MAX_STRING_LENGTH: int = 4096


class BinaryImage:
    """Sections, symbols and relocations of one program.

    Usage::

        image = BinaryImage(blocks, symbols, relocations, pointer_size=8)
        image.resolve_pointer(0x403d50)

    Args:
        blocks:       Loaded memory blocks; must not overlap.
        symbols:      Defined and undefined symbols.
        relocations:  Pointer relocations keyed by the patched address.
        pointer_size: 4 or 8.
        endian:       ``"little"`` or ``"big"``.
        arch:         Architecture name (``"x86_64"``, ``"x86"``, ...).
        itanium_abi:  Force the ABI predicate; ``None`` infers it from
                      the symbol table.
    """

    def __init__(
        self,
        blocks: Iterable[MemoryBlock],
        symbols: Iterable[Symbol] = (),
        relocations: Iterable[Relocation] = (),
        *,
        pointer_size: int = 8,
        endian: str = "little",
        arch: str = "x86_64",
        itanium_abi: Optional[bool] = None,
    ) -> None:
        if pointer_size not in (4, 8):
            raise ValueError(f"unsupported pointer size: {pointer_size}")
        self._pointer_size = pointer_size
        self._endian = endian
        self._arch = arch
        self._itanium_abi = itanium_abi

        self._blocks: list[MemoryBlock] = sorted(blocks, key=lambda b: b.start)
        self._block_starts: list[int] = [b.start for b in self._blocks]

        self._symbols: list[Symbol] = list(symbols)
        self._by_name: dict[str, list[Symbol]] = defaultdict(list)
        self._by_address: dict[int, list[Symbol]] = defaultdict(list)
        for sym in self._symbols:
            self._by_name[sym.name].append(sym)
            if sym.defined:
                self._by_address[sym.address].append(sym)

        self._functions: dict[int, Function] = {}
        for sym in self._symbols:
            if sym.is_function and sym.defined and sym.address:
                self._functions.setdefault(
                    sym.address,
                    Function(address=sym.address, name=sym.name, size=sym.size),
                )
        self._function_starts: list[int] = sorted(self._functions)

        self._relocations: dict[int, Relocation] = {r.address: r for r in relocations}

        self._data: dict[int, Datum] = {}
        self._data_starts: list[int] = []
        self._data_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    #  Geometry
    # ------------------------------------------------------------------ #

    @property
    def pointer_size(self) -> int:
        return self._pointer_size

    @property
    def endian(self) -> str:
        return self._endian

    @property
    def arch(self) -> str:
        return self._arch

    @property
    def blocks(self) -> Sequence[MemoryBlock]:
        return tuple(self._blocks)

    def block_at(self, address: int) -> Optional[MemoryBlock]:
        idx = bisect.bisect_right(self._block_starts, address) - 1
        if idx < 0:
            return None
        block = self._blocks[idx]
        return block if block.contains(address) else None

    def is_code_address(self, address: int) -> bool:
        block = self.block_at(address)
        return block is not None and block.executable

    def data_ranges(self) -> list[AddressRange]:
        """Initialised, non-executable blocks."""
        return [
            (b.start, b.end)
            for b in self._blocks
            if b.initialized and not b.executable
        ]

    # ------------------------------------------------------------------ #
    #  Reads
    # ------------------------------------------------------------------ #

    def read_bytes(self, address: int, length: int) -> Optional[bytes]:
        block = self.block_at(address)
        if block is None or length < 0 or not block.contains(address, length):
            return None
        if not block.initialized:
            return bytes(length)
        offset = address - block.start
        return block.data[offset:offset + length]

    def read_int(self, address: int, size: int, signed: bool = False) -> Optional[int]:
        raw = self.read_bytes(address, size)
        if raw is None or len(raw) != size:
            return None
        return int.from_bytes(raw, self._endian, signed=signed)

    def read_pointer(self, address: int) -> Optional[int]:
        return self.read_int(address, self._pointer_size)

    def relocation_at(self, address: int) -> Optional[Relocation]:
        return self._relocations.get(address)

    def relocations(self) -> list[Relocation]:
        return [self._relocations[a] for a in sorted(self._relocations)]

    def resolve_pointer(self, address: int) -> Optional[int]:
        """Absolute pointer stored at *address*, relocations applied.

        Returns ``None`` when the word is unreadable or relocated against
        a symbol that is not defined in this image.
        """
        reloc = self._relocations.get(address)
        if reloc is not None:
            if reloc.symbol is None:
                return reloc.addend
            target = self.symbol_address(reloc.symbol)
            return None if target is None else target + reloc.addend
        return self.read_pointer(address)

    # ------------------------------------------------------------------ #
    #  Symbols and functions
    # ------------------------------------------------------------------ #

    def symbol_address(self, name: str) -> Optional[int]:
        for sym in self._by_name.get(name, ()):
            if sym.defined:
                return sym.address
        return None

    def symbols_with_prefix(self, prefix: str) -> list[Symbol]:
        return [s for s in self._symbols if s.defined and s.name.startswith(prefix)]

    def symbols_at(self, address: int) -> list[Symbol]:
        return list(self._by_address.get(address, ()))

    def function_at(self, address: int) -> Optional[Function]:
        return self._functions.get(address)

    def functions(self) -> list[Function]:
        return [self._functions[a] for a in self._function_starts]

    def is_itanium_abi(self) -> bool:
        """Whether the program was built by an Itanium C++ ABI toolchain.

        Inferred from mangled ``_Z`` symbols or references to the
        ``__cxxabiv1`` runtime when not forced at construction.
        """
        if self._itanium_abi is not None:
            return self._itanium_abi
        return any(
            name.startswith("_Z") or "__cxxabiv1" in name
            for name in self._by_name
        )

    # ------------------------------------------------------------------ #
    #  Typed data marks
    # ------------------------------------------------------------------ #

    def data_at(self, address: int) -> Optional[Datum]:
        with self._data_lock:
            return self._data.get(address)

    def create_string(self, address: int) -> Optional[Datum]:
        """Mark a NUL-terminated string at *address*.

        Returns the existing mark when a string is already there, and
        ``None`` when the bytes are not terminated inside their block or
        another mark overlaps the string.
        """
        block = self.block_at(address)
        if block is None or not block.initialized:
            return None
        offset = address - block.start
        limit = min(len(block.data), offset + _MAX_STRING_LENGTH)
        nul = block.data.find(b"\x00", offset, limit)
        if nul < 0:
            return None
        raw = block.data[offset:nul]
        datum = Datum(
            address=address,
            length=len(raw) + 1,
            kind=DatumKind.STRING,
            value=raw.decode("utf-8", errors="replace"),
        )
        return self._mark(datum)

    def _mark(self, datum: Datum) -> Optional[Datum]:
        with self._data_lock:
            existing = self._data.get(datum.address)
            if existing is not None:
                if existing.kind == datum.kind and existing.length == datum.length:
                    return existing
                return None
            idx = bisect.bisect_left(self._data_starts, datum.address)
            if idx > 0 and self._data[self._data_starts[idx - 1]].end > datum.address:
                return None
            if idx < len(self._data_starts) and self._data_starts[idx] < datum.end:
                return None
            self._data[datum.address] = datum
            self._data_starts.insert(idx, datum.address)
            return datum

    # ------------------------------------------------------------------ #
    #  Searches
    # ------------------------------------------------------------------ #

    def find_bytes(
        self,
        pattern: bytes,
        ranges: Iterable[AddressRange],
        cancel: Optional[CancellationToken] = None,
    ) -> list[int]:
        """Every address in *ranges* where *pattern* starts and fits."""
        hits: list[int] = []
        if not pattern:
            return hits
        for start, end in ranges:
            if cancel is not None:
                cancel.check()
            block = self.block_at(start)
            if block is None or not block.initialized:
                continue
            end = min(end, block.end)
            lo = start - block.start
            hi = end - block.start
            pos = block.data.find(pattern, lo, hi)
            while pos >= 0:
                hits.append(block.start + pos)
                pos = block.data.find(pattern, pos + 1, hi)
        return hits

    def find_direct_references(
        self,
        target: int,
        alignment: int,
        cancel: Optional[CancellationToken] = None,
    ) -> list[int]:
        """Aligned data words that point at *target*, relocations included."""
        size = self._pointer_size
        needle = target.to_bytes(size, self._endian, signed=False) if target >= 0 else b""
        found: set[int] = set()
        if needle:
            for address in self.find_bytes(needle, self.data_ranges(), cancel):
                if address % alignment == 0 and address not in self._relocations:
                    found.add(address)
        for address in self._relocations:
            block = self.block_at(address)
            if address % alignment or block is None or block.executable:
                continue
            if self.resolve_pointer(address) == target:
                found.add(address)
        if cancel is not None:
            cancel.check()
        return sorted(found)
