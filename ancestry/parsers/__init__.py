"""Binary format loaders producing memory images."""

from ancestry.parsers.elf_parser import ELFParser, load_elf

__all__ = ["ELFParser", "load_elf"]
