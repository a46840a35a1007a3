"""
Type Name Resolution
=====================

Reading mangled ``type_info`` names, locating a ``type_info`` from its
mangled name, and producing a binary-independent display name.

The GNU toolchain emits the name of a class ``type_info`` as a
``_ZTS`` string holding the mangled type without the ``_Z`` prefix,
e.g. ``"N2ns3FooE"`` for ``ns::Foo``.  Names of types with internal
linkage may start with ``*``, which tells the runtime to compare by
address; it is stripped here.

Demangling is delegated to a :class:`Demangler`.  The default
:class:`CxxFiltDemangler` uses the ``cxxfilt`` binding to libstdc++'s
``__cxa_demangle``.

References:
    - Itanium C++ ABI, section 5.1 (Mangling).
    - libstdc++ ``type_info::operator==``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

import cxxfilt

from ancestry.core.errors import CancellationToken
from ancestry.core.models import DatumKind
from ancestry.image.base import AddressRange, MemoryImage, intersect_ranges

if TYPE_CHECKING:
    from ancestry.analyzers.typeinfo import TypeInfo
    from ancestry.core.session import AnalysisSession

TYPE_INFO_PREFIX: str = "_ZTI"
_LOCAL_NAME_MARKER: str = "*"


# ---------------------------------------------------------------------------
# Demangling
# ---------------------------------------------------------------------------

@runtime_checkable
class Demangler(Protocol):
    """Turns a mangled symbol into its display form, or ``None``."""

    def demangle(self, mangled: str) -> Optional[str]: ...


class CxxFiltDemangler:
    """:class:`Demangler` backed by the ``cxxfilt`` library."""

    def demangle(self, mangled: str) -> Optional[str]:
        try:
            result = cxxfilt.demangle(mangled, external_only=False)
        except cxxfilt.InvalidName:
            return None
        return result if result and result != mangled else None


def split_qualified(name: str) -> list[str]:
    """Split a demangled name on ``::`` outside template arguments.

    >>> split_qualified("ns::Foo<std::string>::Bar")
    ['ns', 'Foo<std::string>', 'Bar']
    """
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    i = 0
    while i < len(name):
        ch = name[i]
        if ch in "<(":
            depth += 1
        elif ch in ">)":
            depth = max(0, depth - 1)
        elif depth == 0 and name.startswith("::", i):
            parts.append("".join(current))
            current = []
            i += 2
            continue
        current.append(ch)
        i += 1
    parts.append("".join(current))
    return [p for p in parts if p]


def demangled_name(type_name: str, demangler: Demangler) -> Optional[str]:
    """Demangled class name for a mangled ``type_info`` name.

    ``"N2ns3FooE"`` becomes ``"ns::Foo"``.
    """
    if not type_name:
        return None
    text = demangler.demangle(TYPE_INFO_PREFIX + type_name)
    if not text:
        return None
    for prefix in ("typeinfo for ", "type_info for "):
        if text.startswith(prefix):
            return text[len(prefix):]
    return text


def short_name(symbol: str, demangler: Demangler) -> str:
    """Last path component of a demangled function symbol.

    ``_ZN2ns3FooD2Ev`` becomes ``~Foo``.  The argument list is dropped.
    Falls back to *symbol* when it does not demangle.
    """
    text = demangler.demangle(symbol) if symbol else None
    if not text:
        return symbol
    depth = 0
    for idx, ch in enumerate(text):
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth = max(0, depth - 1)
        elif ch == "(" and depth == 0:
            text = text[:idx]
            break
    parts = split_qualified(text)
    return parts[-1] if parts else text


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def type_name(image: MemoryImage, address: int) -> str:
    """Mangled name of the ``type_info`` at *address*.

    The string is marked in the image on first read; an existing string
    mark is reused.  Returns ``""`` when the name pointer is unreadable
    or the string cannot be marked.
    """
    name_address = image.resolve_pointer(address + image.pointer_size)
    if name_address is None:
        return ""
    datum = image.data_at(name_address)
    if datum is None or datum.kind != DatumKind.STRING:
        datum = image.create_string(name_address)
    if datum is None or not isinstance(datum.value, str):
        return ""
    name = datum.value
    if name.startswith(_LOCAL_NAME_MARKER):
        name = name[1:]
    return name


def find_type_info(
    session: AnalysisSession,
    search_range: Optional[AddressRange],
    name: str,
    cancel: Optional[CancellationToken] = None,
) -> Optional[TypeInfo]:
    """Locate the ``type_info`` whose mangled name is *name*.

    The name must occur exactly once as a whole NUL-terminated string in
    the data ranges (limited to *search_range* when given).  Every
    pointer-aligned reference to that string is then tried as the name
    field of a ``type_info``.

    Returns ``None`` when the string is missing or ambiguous, or when no
    reference identifies.

    Raises:
        AnalysisCancelled: *cancel* was triggered.
    """
    if not name:
        return None
    image = session.image
    ranges = image.data_ranges()
    if search_range is not None:
        ranges = intersect_ranges(ranges, [search_range])

    pattern = name.encode("utf-8") + b"\x00"
    hits: list[int] = []
    for start, end in ranges:
        if cancel is not None:
            cancel.check()
        for hit in image.find_bytes(pattern, [(start, end)], cancel):
            if hit == start or image.read_bytes(hit - 1, 1) == b"\x00":
                hits.append(hit)
    if len(hits) != 1:
        return None

    if cancel is not None:
        cancel.check()
    ptr = image.pointer_size
    for reference in image.find_direct_references(hits[0], ptr, cancel):
        if cancel is not None:
            cancel.check()
        candidate = session.identify(reference - ptr)
        if candidate is not None and candidate.type_name == name:
            return candidate
    return None


def unique_type_name(type_info: TypeInfo, demangler: Demangler) -> str:
    """Binary-independent, ``::``-qualified name of a class.

    Two images built from the same source produce the same string for
    the same class.  Names that do not demangle fall back to the mangled
    type name.
    """
    mangled = type_info.type_name
    text = demangled_name(mangled, demangler)
    if not text:
        return mangled
    return "::".join(split_qualified(text))
