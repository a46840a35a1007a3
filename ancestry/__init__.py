"""
Ancestry -- C++ Class Hierarchy Recovery
=========================================

Ancestry reconstructs run-time type information and class hierarchies
from programs built with an Itanium C++ ABI toolchain (GCC, Clang),
working only from the compiled image: no debug information, no source.

Capabilities:
    - ELF loading (sections, symbols, REL/RELA pointer relocations)
    - Identification of ``__class_type_info``, ``__si_class_type_info``
      and ``__vmi_class_type_info`` structures
    - Base-class graph recovery with virtual/public flags and offsets
    - Vtable group parsing with secondary tables and pure-virtual slots
    - VTT parsing for classes with virtual bases
    - Constructor/destructor correlation through vtable-pointer stores
    - Rich console output and JSON reports

References:
    - Itanium C++ ABI. https://itanium-cxx-abi.github.io/cxx-abi/abi.html
    - TIS Committee. (1995). ELF Specification.
"""

__version__ = "1.0.0"
__all__ = ["__version__"]
