"""
Ancestry Report Generator
==========================

Writes the recovered class hierarchy as a structured JSON document for
consumption by other tools (for example a disassembler script that
applies class names and vtable structures to a database).

Addresses are emitted as ``0x``-prefixed hexadecimal strings.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ancestry.core.models import ClassReport, HierarchyAnalysisResult, VtableReport

REPORT_VERSION: str = "1.0.0"


def _hex(value: Optional[int]) -> Optional[str]:
    return None if value is None else f"0x{value:x}"


class AncestryReportGenerator:
    """Serialises a :class:`HierarchyAnalysisResult`.

    Usage::

        gen = AncestryReportGenerator()
        path = gen.generate_json(result, "output/report.json")
    """

    def build(self, result: HierarchyAnalysisResult) -> dict[str, Any]:
        """Report document as plain JSON-compatible data."""
        return {
            "report_type": "ancestry_class_hierarchy",
            "version": REPORT_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "image": {
                "path": result.info.path,
                "size": result.info.size,
                "arch": result.info.arch,
                "bits": result.info.bits,
                "endian": result.info.endian,
                "itanium_abi": result.info.itanium_abi,
                "sha256": result.info.sha256,
            },
            "pure_virtual": _hex(result.pure_virtual_address),
            "duration_seconds": round(result.duration_seconds, 3),
            "class_count": len(result.classes),
            "failed_count": len(result.failed),
            "classes": [self._class(c) for c in result.classes],
        }

    def generate_json(self, result: HierarchyAnalysisResult, output_path: str) -> str:
        """Write the report to *output_path* and return its absolute path."""
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.build(result), f, indent=2, ensure_ascii=False, default=str)

        return str(path.resolve())

    def to_json(self, result: HierarchyAnalysisResult) -> str:
        return json.dumps(self.build(result), indent=2, ensure_ascii=False, default=str)

    # ------------------------------------------------------------------ #
    #  Sections
    # ------------------------------------------------------------------ #

    def _class(self, cls: ClassReport) -> dict[str, Any]:
        data: dict[str, Any] = {
            "address": _hex(cls.address),
            "kind": cls.kind.value,
            "type_name": cls.type_name,
            "name": cls.name,
            "abstract": cls.abstract,
            "parents": [
                {
                    "address": _hex(p.address),
                    "name": p.name,
                    "offset": p.offset,
                    "virtual": p.is_virtual,
                    "public": p.is_public,
                }
                for p in cls.parents
            ],
            "virtual_parents": [_hex(a) for a in cls.virtual_parents],
            "vtable": self._vtable(cls.vtable) if cls.vtable else None,
            "vtt": [_hex(e) for e in cls.vtt],
            "assignments": [
                {
                    "function": _hex(a.function.address),
                    "name": a.function.name,
                    "class": _hex(a.class_address),
                    "role": a.role.value,
                    "stores": [
                        {
                            "site": _hex(s.site),
                            "value": _hex(s.value),
                            "class": _hex(s.class_address),
                            "vtt_index": s.vtt_index,
                        }
                        for s in a.stores
                    ],
                }
                for a in cls.assignments
            ],
        }
        if cls.error:
            data["error"] = cls.error
        return data

    @staticmethod
    def _vtable(vtable: VtableReport) -> dict[str, Any]:
        return {
            "address": _hex(vtable.address),
            "tables": [
                {
                    "address_point": _hex(t.address_point),
                    "offset_to_top": t.offset_to_top,
                    "base": _hex(t.base_address),
                    "slots": [
                        {
                            "address": _hex(s.address),
                            "name": s.name,
                            "pure_virtual": s.is_pure_virtual,
                        }
                        for s in t.slots
                    ],
                }
                for t in vtable.tables
            ],
        }
