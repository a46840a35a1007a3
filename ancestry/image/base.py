"""
Memory Image Capability
========================

The recovery code never touches files or a disassembler database
directly; it reads through the :class:`MemoryImage` protocol below.
:class:`ancestry.image.memory.BinaryImage` is the in-memory
implementation used by the ELF loader and by the tests, and any host
(a disassembler plugin, an emulator snapshot) can provide its own.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Sequence, runtime_checkable

from ancestry.core.errors import CancellationToken
from ancestry.core.models import Datum, Function, MemoryBlock, Relocation, Symbol

AddressRange = tuple[int, int]


@runtime_checkable
class MemoryImage(Protocol):
    """Byte-addressable view of a compiled program.

    Every read returns ``None`` for addresses outside the loaded,
    initialised blocks instead of raising.
    """

    @property
    def pointer_size(self) -> int: ...

    @property
    def endian(self) -> str: ...

    @property
    def arch(self) -> str: ...

    @property
    def blocks(self) -> Sequence[MemoryBlock]: ...

    def block_at(self, address: int) -> Optional[MemoryBlock]: ...

    def is_code_address(self, address: int) -> bool: ...

    def read_bytes(self, address: int, length: int) -> Optional[bytes]: ...

    def read_int(self, address: int, size: int, signed: bool = False) -> Optional[int]: ...

    def read_pointer(self, address: int) -> Optional[int]: ...

    def relocation_at(self, address: int) -> Optional[Relocation]: ...

    def relocations(self) -> list[Relocation]: ...

    def resolve_pointer(self, address: int) -> Optional[int]: ...

    def data_ranges(self) -> list[AddressRange]: ...

    def symbol_address(self, name: str) -> Optional[int]: ...

    def symbols_with_prefix(self, prefix: str) -> list[Symbol]: ...

    def symbols_at(self, address: int) -> list[Symbol]: ...

    def function_at(self, address: int) -> Optional[Function]: ...

    def functions(self) -> list[Function]: ...

    def data_at(self, address: int) -> Optional[Datum]: ...

    def create_string(self, address: int) -> Optional[Datum]: ...

    def find_bytes(
        self,
        pattern: bytes,
        ranges: Iterable[AddressRange],
        cancel: Optional[CancellationToken] = None,
    ) -> list[int]: ...

    def find_direct_references(
        self,
        target: int,
        alignment: int,
        cancel: Optional[CancellationToken] = None,
    ) -> list[int]: ...

    def is_itanium_abi(self) -> bool: ...


def intersect_ranges(
    ranges: Iterable[AddressRange], limits: Iterable[AddressRange]
) -> list[AddressRange]:
    """Intersect two collections of half-open ``(start, end)`` ranges."""
    limits = list(limits)
    result: list[AddressRange] = []
    for start, end in ranges:
        for lo, hi in limits:
            s, e = max(start, lo), min(end, hi)
            if s < e:
                result.append((s, e))
    return sorted(result)
