"""
ELF Image Loader
=================

Manual struct-based parser that turns an ELF executable or shared
object into a :class:`~ancestry.image.memory.BinaryImage`: allocated
sections become memory blocks, ``.symtab``/``.dynsym`` entries become
symbols, and pointer-sized dynamic relocations become the relocation
table used to resolve ``type_info`` and vtable pointers in
position-independent code.

All parsing is performed with :mod:`struct`; both ELF32 and ELF64 in
either byte order are supported.  Relocatable objects (``ET_REL``) are
rejected because their sections all start at address zero.

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2.
    - System V Application Binary Interface, AMD64/i386/AArch64/ARM
      processor supplements (relocation types).
"""

from __future__ import annotations

import hashlib
import struct
from pathlib import Path
from typing import Optional

from ancestry.core.errors import ImageLoadError
from ancestry.core.models import ImageInfo, MemoryBlock, Relocation, Symbol
from ancestry.image.memory import BinaryImage


# ---------------------------------------------------------------------------
# ELF Constants
# ---------------------------------------------------------------------------

ELF_MAGIC: bytes = b"\x7fELF"

ELFCLASS32: int = 1
ELFCLASS64: int = 2
ELFDATA2LSB: int = 1

ET_REL: int = 1

EM_386: int = 3
EM_ARM: int = 40
EM_X86_64: int = 62
EM_AARCH64: int = 183

_EM_NAMES: dict[int, str] = {
    EM_386: "x86",
    EM_ARM: "ARM",
    EM_X86_64: "x86_64",
    EM_AARCH64: "AArch64",
}

SHT_SYMTAB: int = 2
SHT_RELA: int = 4
SHT_NOBITS: int = 8
SHT_REL: int = 9
SHT_DYNSYM: int = 11

SHF_WRITE: int = 0x1
SHF_ALLOC: int = 0x2
SHF_EXECINSTR: int = 0x4
SHF_TLS: int = 0x400

STT_FUNC: int = 2
STT_GNU_IFUNC: int = 10
SHN_UNDEF: int = 0

# Pointer-sized relocations per machine: (absolute/GOT types, relative types)
_POINTER_RELOCS: dict[int, tuple[frozenset[int], frozenset[int]]] = {
    EM_X86_64: (frozenset({1, 6}), frozenset({8})),        # R_X86_64_64, GLOB_DAT / RELATIVE
    EM_386: (frozenset({1, 6}), frozenset({8})),           # R_386_32, GLOB_DAT / RELATIVE
    EM_AARCH64: (frozenset({257, 1025}), frozenset({1027})),
    EM_ARM: (frozenset({2, 21}), frozenset({23})),
}


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _SectionHeader:
    """Parsed section header entry."""
    __slots__ = (
        "sh_name", "sh_type", "sh_flags", "sh_addr",
        "sh_offset", "sh_size", "sh_link", "sh_info",
        "sh_addralign", "sh_entsize", "name",
    )

    def __init__(self, fields: tuple[int, ...]) -> None:
        (
            self.sh_name, self.sh_type, self.sh_flags, self.sh_addr,
            self.sh_offset, self.sh_size, self.sh_link, self.sh_info,
            self.sh_addralign, self.sh_entsize,
        ) = fields
        self.name: str = ""


class _Symbol:
    """Parsed symbol table entry."""
    __slots__ = ("name", "st_value", "st_size", "st_info", "st_shndx")

    def __init__(self, name: str, value: int, size: int, info: int, shndx: int) -> None:
        self.name = name
        self.st_value = value
        self.st_size = size
        self.st_info = info
        self.st_shndx = shndx

    @property
    def is_function(self) -> bool:
        return (self.st_info & 0xF) in (STT_FUNC, STT_GNU_IFUNC)

    @property
    def defined(self) -> bool:
        return self.st_shndx != SHN_UNDEF


# ---------------------------------------------------------------------------
# ELF Parser
# ---------------------------------------------------------------------------

class ELFParser:
    """Struct-based ELF parser producing a :class:`BinaryImage`.

    Usage::

        parser = ELFParser(raw_bytes)
        if parser.parse():
            image = parser.to_image()
    """

    def __init__(self, data: bytes) -> None:
        self._data: bytes = data
        self._endian: str = "<"
        self._is_64bit: bool = False
        self._e_type: int = 0
        self._e_machine: int = 0
        self._sections: list[_SectionHeader] = []
        self._symtabs: dict[int, list[_Symbol]] = {}
        self._relocations: list[Relocation] = []

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> bool:
        """Parse headers, sections, symbols and relocations.

        Returns:
            ``True`` if parsing succeeded, ``False`` on invalid data.
        """
        if len(self._data) < 52 or self._data[:4] != ELF_MAGIC:
            return False
        try:
            self._parse_elf_header()
            self._parse_section_headers()
            self._parse_symbol_tables()
            self._parse_relocations()
        except (struct.error, IndexError, ValueError):
            return False
        return True

    @property
    def pointer_size(self) -> int:
        return 8 if self._is_64bit else 4

    @property
    def arch(self) -> str:
        return _EM_NAMES.get(self._e_machine, f"unknown({self._e_machine})")

    @property
    def is_relocatable(self) -> bool:
        return self._e_type == ET_REL

    def get_image_info(self) -> ImageInfo:
        return ImageInfo(
            size=len(self._data),
            arch=self.arch,
            bits=self.pointer_size * 8,
            endian="little" if self._endian == "<" else "big",
            sha256=hashlib.sha256(self._data).hexdigest(),
        )

    def get_blocks(self) -> list[MemoryBlock]:
        """Allocated, non-TLS sections as memory blocks."""
        blocks: list[MemoryBlock] = []
        for sh in self._sections:
            if not sh.sh_flags & SHF_ALLOC or sh.sh_flags & SHF_TLS:
                continue
            if sh.sh_size == 0 or sh.sh_addr == 0:
                continue
            data = b""
            if sh.sh_type != SHT_NOBITS:
                data = self._data[sh.sh_offset:sh.sh_offset + sh.sh_size]
            blocks.append(MemoryBlock(
                name=sh.name,
                start=sh.sh_addr,
                data=data,
                size=sh.sh_size,
                executable=bool(sh.sh_flags & SHF_EXECINSTR),
                writable=bool(sh.sh_flags & SHF_WRITE),
            ))
        return blocks

    def get_symbols(self) -> list[Symbol]:
        result: list[Symbol] = []
        for symbols in self._symtabs.values():
            for sym in symbols:
                if not sym.name:
                    continue
                result.append(Symbol(
                    name=sym.name,
                    address=sym.st_value,
                    size=sym.st_size,
                    is_function=sym.is_function,
                    defined=sym.defined,
                ))
        return result

    def get_relocations(self) -> list[Relocation]:
        return list(self._relocations)

    def to_image(self) -> BinaryImage:
        return BinaryImage(
            self.get_blocks(),
            self.get_symbols(),
            self._relocations,
            pointer_size=self.pointer_size,
            endian="little" if self._endian == "<" else "big",
            arch=self.arch,
        )

    # ------------------------------------------------------------------ #
    #  Header and section parsing
    # ------------------------------------------------------------------ #

    def _parse_elf_header(self) -> None:
        self._is_64bit = self._data[4] == ELFCLASS64
        self._endian = "<" if self._data[5] == ELFDATA2LSB else ">"
        fmt = f"{self._endian}HHIQQQIHHHHHH" if self._is_64bit else f"{self._endian}HHIIIIIHHHHHH"
        (
            self._e_type, self._e_machine, _version, _entry,
            _phoff, self._e_shoff, _flags, _ehsize,
            _phentsize, _phnum, self._e_shentsize, self._e_shnum,
            self._e_shstrndx,
        ) = struct.unpack_from(fmt, self._data, 16)

    def _parse_section_headers(self) -> None:
        if self._e_shoff == 0 or self._e_shnum == 0:
            return
        fmt = f"{self._endian}IIQQQQIIQQ" if self._is_64bit else f"{self._endian}IIIIIIIIII"
        size = struct.calcsize(fmt)
        for i in range(self._e_shnum):
            offset = self._e_shoff + i * self._e_shentsize
            if offset + size > len(self._data):
                break
            self._sections.append(_SectionHeader(struct.unpack_from(fmt, self._data, offset)))

        if 0 < self._e_shstrndx < len(self._sections):
            strtab = self._section_bytes(self._sections[self._e_shstrndx])
            for sh in self._sections:
                sh.name = self._read_cstring(strtab, sh.sh_name)

    def _section_bytes(self, sh: _SectionHeader) -> bytes:
        end = sh.sh_offset + sh.sh_size
        if sh.sh_type == SHT_NOBITS or end > len(self._data):
            return b""
        return self._data[sh.sh_offset:end]

    # ------------------------------------------------------------------ #
    #  Symbol tables
    # ------------------------------------------------------------------ #

    def _parse_symbol_tables(self) -> None:
        for index, sh in enumerate(self._sections):
            if sh.sh_type in (SHT_SYMTAB, SHT_DYNSYM):
                self._symtabs[index] = self._parse_symbol_table(sh)

    def _parse_symbol_table(self, sh: _SectionHeader) -> list[_Symbol]:
        if sh.sh_entsize == 0:
            return []
        strtab = b""
        if sh.sh_link < len(self._sections):
            strtab = self._section_bytes(self._sections[sh.sh_link])

        if self._is_64bit:
            fmt = f"{self._endian}IBBHQQ"
        else:
            fmt = f"{self._endian}IIIBBH"
        size = struct.calcsize(fmt)

        symbols: list[_Symbol] = []
        for i in range(sh.sh_size // sh.sh_entsize):
            offset = sh.sh_offset + i * sh.sh_entsize
            if offset + size > len(self._data):
                break
            fields = struct.unpack_from(fmt, self._data, offset)
            if self._is_64bit:
                st_name, st_info, _other, st_shndx, st_value, st_size = fields
            else:
                st_name, st_value, st_size, st_info, _other, st_shndx = fields
            name = self._read_cstring(strtab, st_name) if strtab else ""
            symbols.append(_Symbol(name, st_value, st_size, st_info, st_shndx))
        return symbols

    # ------------------------------------------------------------------ #
    #  Relocations
    # ------------------------------------------------------------------ #

    def _parse_relocations(self) -> None:
        """Collect pointer-sized absolute and relative relocations."""
        if self._e_type == ET_REL:
            return
        absolute, relative = _POINTER_RELOCS.get(
            self._e_machine, (frozenset(), frozenset())
        )
        for sh in self._sections:
            if sh.sh_type not in (SHT_RELA, SHT_REL) or sh.sh_entsize == 0:
                continue
            symbols = self._symtabs.get(sh.sh_link, [])
            is_rela = sh.sh_type == SHT_RELA
            for offset, sym_index, rtype, addend in self._iter_relocations(sh, is_rela):
                if rtype not in absolute and rtype not in relative:
                    continue
                if not is_rela:
                    addend = self._implicit_addend(offset, rtype in absolute)
                reloc = self._make_relocation(
                    offset, sym_index, rtype, addend, symbols, rtype in relative
                )
                if reloc is not None:
                    self._relocations.append(reloc)

    def _iter_relocations(self, sh: _SectionHeader, is_rela: bool):
        if self._is_64bit:
            fmt = f"{self._endian}QQq" if is_rela else f"{self._endian}QQ"
        else:
            fmt = f"{self._endian}IIi" if is_rela else f"{self._endian}II"
        size = struct.calcsize(fmt)
        for i in range(sh.sh_size // sh.sh_entsize):
            pos = sh.sh_offset + i * sh.sh_entsize
            if pos + size > len(self._data):
                break
            fields = struct.unpack_from(fmt, self._data, pos)
            r_offset, r_info = fields[0], fields[1]
            addend = fields[2] if is_rela else 0
            if self._is_64bit:
                yield r_offset, r_info >> 32, r_info & 0xFFFFFFFF, addend
            else:
                yield r_offset, r_info >> 8, r_info & 0xFF, addend

    def _implicit_addend(self, address: int, absolute: bool) -> int:
        """REL relocations keep their addend in the patched word."""
        for sh in self._sections:
            if sh.sh_flags & SHF_ALLOC and sh.sh_addr <= address < sh.sh_addr + sh.sh_size:
                raw = self._section_bytes(sh)
                pos = address - sh.sh_addr
                word = raw[pos:pos + self.pointer_size]
                if len(word) == self.pointer_size:
                    return int.from_bytes(
                        word, "little" if self._endian == "<" else "big", signed=absolute
                    )
        return 0

    @staticmethod
    def _make_relocation(
        address: int,
        sym_index: int,
        rtype: int,
        addend: int,
        symbols: list[_Symbol],
        relative: bool,
    ) -> Optional[Relocation]:
        if relative or sym_index == 0:
            return Relocation(address=address, addend=addend, type=rtype)
        if sym_index >= len(symbols):
            return None
        sym = symbols[sym_index]
        if not sym.name:
            # section symbol: fold its address into the addend
            return Relocation(address=address, addend=sym.st_value + addend, type=rtype)
        return Relocation(address=address, symbol=sym.name, addend=addend, type=rtype)

    @staticmethod
    def _read_cstring(data: bytes, offset: int) -> str:
        if offset < 0 or offset >= len(data):
            return ""
        end = data.find(b"\x00", offset)
        if end == -1:
            end = len(data)
        return data[offset:end].decode("ascii", errors="replace")


def load_elf(path: str | Path) -> tuple[BinaryImage, ImageInfo]:
    """Load an ELF file into a :class:`BinaryImage`.

    Raises:
        ImageLoadError: The file is unreadable, not ELF, or relocatable.
    """
    file_path = Path(path)
    try:
        data = file_path.read_bytes()
    except OSError as exc:
        raise ImageLoadError(f"cannot read {file_path}: {exc}") from exc

    parser = ELFParser(data)
    if not parser.parse():
        raise ImageLoadError(f"{file_path} is not a valid ELF file")
    if parser.is_relocatable:
        raise ImageLoadError(f"{file_path} is a relocatable object; link it first")

    image = parser.to_image()
    info = parser.get_image_info()
    info.path = str(file_path.resolve())
    info.itanium_abi = image.is_itanium_abi()
    return image, info
