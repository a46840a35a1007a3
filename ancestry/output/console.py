"""
Ancestry Console Output
========================

Rich-powered terminal display of a recovered class hierarchy: an image
panel, a class table, an inheritance tree and, per class, the vtable
layout and constructor/destructor assignments.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from shared.console import AncestryConsole

from ancestry.core.models import (
    ClassReport,
    ClassRole,
    HierarchyAnalysisResult,
    ImageInfo,
    TypeInfoKind,
)

_KIND_LABELS: dict[TypeInfoKind, str] = {
    TypeInfoKind.BASE: "base",
    TypeInfoKind.SINGLE: "single",
    TypeInfoKind.MULTIPLE_OR_VIRTUAL: "multiple/virtual",
}


def _label(cls: ClassReport) -> str:
    return cls.name or cls.type_name or f"0x{cls.address:x}"


class AncestryConsoleOutput:
    """Renders a :class:`HierarchyAnalysisResult` to the terminal.

    Usage::

        output = AncestryConsoleOutput()
        output.display(result)
    """

    def __init__(self, console: AncestryConsole | None = None) -> None:
        self._console: AncestryConsole = console or AncestryConsole()

    def display(self, result: HierarchyAnalysisResult, details: bool = False) -> None:
        """Display the complete result.

        Args:
            result:  The result to render.
            details: Also print vtable layouts and assignments per class.
        """
        self._console.section("ANCESTRY -- C++ Class Hierarchy Recovery")
        self.display_header(result)

        if not result.classes:
            self._console.warning("No class type_info structures recovered")
            return

        self.display_classes(result.classes)
        self.display_tree(result.classes)

        if details:
            for cls in result.classes:
                self.display_class(cls)

        for cls in result.failed:
            self._console.warning(f"{_label(cls)}: {cls.error}")
        self._console.divider()

    def display_header(self, result: HierarchyAnalysisResult) -> None:
        info: ImageInfo = result.info
        lines: list[str] = [
            f"[bold]File:[/bold]          {info.path or '<memory>'}",
            f"[bold]Arch:[/bold]          {info.arch} ({info.bits}-bit, {info.endian})",
            f"[bold]Itanium ABI:[/bold]   {'yes' if info.itanium_abi else 'no'}",
            f"[bold]Classes:[/bold]       {len(result.classes)}",
            f"[bold]Duration:[/bold]      {result.duration_seconds:.2f}s",
        ]
        if info.sha256:
            lines.append(f"[bold]SHA-256:[/bold]       {info.sha256}")
        if result.pure_virtual_address is not None:
            lines.append(
                f"[bold]Pure virtual:[/bold]  [ancestry.address]0x{result.pure_virtual_address:x}[/ancestry.address]"
            )
        self._console.rich.print(
            Panel(
                "\n".join(lines),
                title="[bold bright_cyan]Image[/bold bright_cyan]",
                border_style="bright_cyan",
                padding=(1, 2),
            )
        )
        self._console.blank()

    def display_classes(self, classes: list[ClassReport]) -> None:
        self._console.section("Classes")
        tbl = Table(
            border_style="bright_cyan",
            header_style="bold bright_magenta",
            padding=(0, 1),
        )
        tbl.add_column("type_info", style="ancestry.address", justify="right")
        tbl.add_column("Name", style="bold", min_width=16)
        tbl.add_column("Kind")
        tbl.add_column("Bases")
        tbl.add_column("Vtable", justify="right")
        tbl.add_column("Slots", justify="right")
        tbl.add_column("Ctors/Dtors", justify="right")

        for cls in classes:
            name = _label(cls)
            if cls.abstract:
                name = f"[ancestry.abstract]{name}[/ancestry.abstract]"
            bases = ", ".join(
                f"[ancestry.virtual]virtual {p.name}[/ancestry.virtual]" if p.is_virtual else p.name
                for p in cls.parents
            )
            ctors = sum(1 for a in cls.assignments if a.role == ClassRole.CONSTRUCTOR)
            dtors = len(cls.assignments) - ctors
            tbl.add_row(
                f"0x{cls.address:x}",
                name,
                _KIND_LABELS.get(cls.kind, cls.kind.value),
                bases or "-",
                f"0x{cls.vtable.address:x}" if cls.vtable else "-",
                str(sum(len(t.slots) for t in cls.vtable.tables)) if cls.vtable else "-",
                f"{ctors}/{dtors}",
            )
        self._console.rich.print(tbl)
        self._console.blank()

    def display_tree(self, classes: list[ClassReport]) -> None:
        """Inheritance forest, roots being classes without bases."""
        self._console.section("Inheritance")
        by_address = {c.address: c for c in classes}
        children: dict[int, list[ClassReport]] = {}
        for cls in classes:
            for parent in cls.parents:
                children.setdefault(parent.address, []).append(cls)

        root = Tree("[bold]classes[/bold]", guide_style="bright_cyan")

        def add(node: Tree, cls: ClassReport, path: frozenset[int]) -> None:
            for child in children.get(cls.address, []):
                if child.address in path:
                    continue
                edge = next(p for p in child.parents if p.address == cls.address)
                prefix = "[ancestry.virtual]virtual[/ancestry.virtual] " if edge.is_virtual else ""
                add(node.add(f"{prefix}{_label(child)}"), child, path | {child.address})

        for cls in classes:
            if not any(p.address in by_address for p in cls.parents):
                add(root.add(_label(cls)), cls, frozenset({cls.address}))
        self._console.rich.print(root)
        self._console.blank()

    def display_class(self, cls: ClassReport) -> None:
        """Vtable layout and assignments of one class."""
        self._console.section(_label(cls))
        if cls.vtable:
            for idx, table in enumerate(cls.vtable.tables):
                title = "primary" if idx == 0 else f"secondary (offset-to-top {table.offset_to_top})"
                self._console.table(
                    f"0x{table.address_point:x} {title}",
                    ["#", "Address", "Function"],
                    [
                        (
                            i,
                            f"0x{slot.address:x}" if slot.address is not None else "-",
                            "<pure virtual>" if slot.is_pure_virtual else slot.name or "?",
                        )
                        for i, slot in enumerate(table.slots)
                    ],
                    styles=["dim", "ancestry.address", ""],
                )
        if cls.assignments:
            self._console.table(
                "Constructors / destructors",
                ["Function", "Name", "Role", "Stores"],
                [
                    (
                        f"0x{a.function.address:x}",
                        a.function.name or "?",
                        a.role.value,
                        len(a.stores),
                    )
                    for a in cls.assignments
                ],
                styles=["ancestry.address", "bold", "", ""],
            )
        self._console.blank()
