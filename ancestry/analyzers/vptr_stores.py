"""
Vtable-Pointer Store Detection
===============================

Finds the instructions of a function that write a pointer-sized
constant into memory.  Constructors and destructors install vtable
pointers this way::

    lea   rax, [rip + _ZTV3Foo+16]
    mov   qword ptr [rdi], rax            ; non-PIC: mov qword ptr [rdi], imm

The :class:`VtablePointerStoreDetector` protocol is all the correlator
needs.  :class:`CapstoneStoreDetector` implements it for x86 and x86-64
with a single forward pass that tracks constant values held in
registers (``lea`` with RIP-relative operands, immediate moves, loads
through the GOT, ``add reg, imm``) and which registers alias the
incoming object pointer (``rdi`` on x86-64, ``[esp+4]`` on x86).
Spilling that pointer to a frame slot (``mov [rbp-8], rdi`` at -O0)
makes a later reload of the slot an alias too.  The pass does not
follow branches; values are simply forgotten when a register is
overwritten or a call clobbers it.

References:
    - Capstone disassembly engine: https://www.capstone-engine.org/
    - System V AMD64 ABI, section 3.2 (Function Calling Sequence).
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import capstone
from capstone import x86

from ancestry.core.models import Function, VptrStore
from ancestry.image.base import MemoryImage


@runtime_checkable
class VtablePointerStoreDetector(Protocol):
    """Yields the constant pointer stores performed by a function."""

    def stores(self, function: Function) -> list[VptrStore]: ...


# ---------------------------------------------------------------------------
# Register helpers
# ---------------------------------------------------------------------------

_WIDE_NAMES: dict[str, str] = {
    "eax": "rax", "ebx": "rbx", "ecx": "rcx", "edx": "rdx",
    "esi": "rsi", "edi": "rdi", "ebp": "rbp", "esp": "rsp",
    **{f"r{i}d": f"r{i}" for i in range(8, 16)},
}

_CALLER_SAVED_64: frozenset[str] = frozenset(
    {"rax", "rcx", "rdx", "rsi", "rdi", "r8", "r9", "r10", "r11"}
)
_CALLER_SAVED_32: frozenset[str] = frozenset({"eax", "ecx", "edx"})

_FRAME_REGS: frozenset[str] = frozenset({"rbp", "rsp", "ebp", "esp"})

_MODES: dict[str, tuple[int, int]] = {
    "x86": (capstone.CS_ARCH_X86, capstone.CS_MODE_32),
    "i386": (capstone.CS_ARCH_X86, capstone.CS_MODE_32),
    "x86_64": (capstone.CS_ARCH_X86, capstone.CS_MODE_64),
    "amd64": (capstone.CS_ARCH_X86, capstone.CS_MODE_64),
}


class CapstoneStoreDetector:
    """:class:`VtablePointerStoreDetector` for x86 and x86-64 code.

    Args:
        image:             Image the functions live in.
        max_function_size: Bytes disassembled when a function has no
                           recorded size.
    """

    def __init__(self, image: MemoryImage, max_function_size: int = 0x4000) -> None:
        arch = image.arch.lower()
        if arch not in _MODES:
            raise ValueError(f"unsupported architecture for store detection: {image.arch}")
        self._image = image
        self._max_size = max_function_size
        self._wide = image.pointer_size == 8
        self._mask = (1 << (8 * image.pointer_size)) - 1
        cs_arch, cs_mode = _MODES[arch]
        self._cs = capstone.Cs(cs_arch, cs_mode)
        self._cs.detail = True

    def _name(self, insn: capstone.CsInsn, reg: int) -> str:
        name = insn.reg_name(reg) or ""
        return _WIDE_NAMES.get(name, name) if self._wide else name

    def _code(self, function: Function) -> bytes:
        block = self._image.block_at(function.address)
        if block is None or not block.initialized:
            return b""
        size = function.size or self._max_size
        size = min(size, block.end - function.address)
        return self._image.read_bytes(function.address, size) or b""

    def stores(self, function: Function) -> list[VptrStore]:
        """Constant pointer stores of *function* in instruction order."""
        code = self._code(function)
        if not code:
            return []

        values: dict[str, int] = {}
        this_regs: set[str] = {"rdi"} if self._wide else set()
        this_slots: set[tuple[str, int]] = set()
        caller_saved = _CALLER_SAVED_64 if self._wide else _CALLER_SAVED_32
        result: list[VptrStore] = []

        for insn in self._cs.disasm(code, function.address):
            if insn.id == x86.X86_INS_RET and not function.size:
                break
            if insn.id == x86.X86_INS_CALL:
                for reg in caller_saved:
                    values.pop(reg, None)
                    this_regs.discard(reg)
                continue

            ops = insn.operands
            if insn.id in (x86.X86_INS_MOV, x86.X86_INS_LEA, x86.X86_INS_ADD) and len(ops) == 2:
                if self._track(insn, ops[0], ops[1], values, this_regs, this_slots, result):
                    continue

            try:
                _, written = insn.regs_access()
            except capstone.CsError:
                continue
            for reg in written:
                name = self._name(insn, reg)
                values.pop(name, None)
                this_regs.discard(name)
        return result

    def _track(
        self,
        insn: capstone.CsInsn,
        dst: x86.X86Op,
        src: x86.X86Op,
        values: dict[str, int],
        this_regs: set[str],
        this_slots: set[tuple[str, int]],
        result: list[VptrStore],
    ) -> bool:
        """Update register state for one two-operand instruction.

        Returns ``True`` when the instruction was fully handled.
        """
        ptr = self._image.pointer_size

        if dst.type == x86.X86_OP_MEM:
            slot_key = self._stack_slot(insn, dst)
            if slot_key is not None:
                holds_this = (
                    insn.id == x86.X86_INS_MOV
                    and src.type == x86.X86_OP_REG
                    and self._name(insn, src.reg) in this_regs
                )
                if holds_this:
                    this_slots.add(slot_key)
                else:
                    this_slots.discard(slot_key)
            if insn.id != x86.X86_INS_MOV or dst.size != ptr:
                return False
            value: Optional[int] = None
            if src.type == x86.X86_OP_IMM:
                value = src.imm & self._mask
            elif src.type == x86.X86_OP_REG:
                value = values.get(self._name(insn, src.reg))
            if value:
                base = self._name(insn, dst.mem.base) if dst.mem.base else ""
                result.append(VptrStore(site=insn.address, value=value, on_this=base in this_regs))
            return True

        if dst.type != x86.X86_OP_REG:
            return False
        target = self._name(insn, dst.reg)

        if insn.id == x86.X86_INS_ADD:
            if src.type == x86.X86_OP_IMM and target in values:
                values[target] = (values[target] + src.imm) & self._mask
                return True
            return False

        if insn.id == x86.X86_INS_LEA:
            address = self._effective_address(insn, src)
            values.pop(target, None)
            this_regs.discard(target)
            if address is not None:
                values[target] = address
            return True

        # mov reg, ...
        values.pop(target, None)
        this_regs.discard(target)
        if src.type == x86.X86_OP_IMM:
            values[target] = src.imm & self._mask
        elif src.type == x86.X86_OP_REG:
            source = self._name(insn, src.reg)
            if source in values:
                values[target] = values[source]
            if source in this_regs:
                this_regs.add(target)
        elif src.type == x86.X86_OP_MEM:
            if self._is_first_stack_argument(insn, src) or self._stack_slot(insn, src) in this_slots:
                this_regs.add(target)
            else:
                slot = self._effective_address(insn, src)
                loaded = self._image.resolve_pointer(slot) if slot is not None else None
                if loaded:
                    values[target] = loaded
        return True

    def _effective_address(self, insn: capstone.CsInsn, op: x86.X86Op) -> Optional[int]:
        """Absolute address of a RIP-relative or absolute memory operand."""
        mem = op.mem
        if mem.index:
            return None
        if mem.base == x86.X86_REG_RIP:
            return (insn.address + insn.size + mem.disp) & self._mask
        if not mem.base:
            return mem.disp & self._mask
        return None

    def _stack_slot(self, insn: capstone.CsInsn, op: x86.X86Op) -> Optional[tuple[str, int]]:
        """Frame-relative location of a memory operand, e.g. ``("rbp", -8)``."""
        mem = op.mem
        if mem.index or not mem.base:
            return None
        base = self._name(insn, mem.base)
        if base not in _FRAME_REGS:
            return None
        return base, mem.disp

    def _is_first_stack_argument(self, insn: capstone.CsInsn, op: x86.X86Op) -> bool:
        if self._wide:
            return False
        base = self._name(insn, op.mem.base) if op.mem.base else ""
        return (base == "esp" and op.mem.disp == 4) or (base == "ebp" and op.mem.disp == 8)
