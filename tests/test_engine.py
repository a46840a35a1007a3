"""Tests for the whole-image engine, the report generator and the CLI."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import TEXT_BASE, FakeDemangler, FakeDetector, ImageBuilder, VirtualBasesScenario, make_session
from test_elf_parser import build_elf
from test_vptr_stores import MOV_RDI_RAX, RET, VT, lea_rax

from shared.config import AncestryConfig
from shared.logger import AncestryLogger

from ancestry.cli import ancestry_cli
from ancestry.core.engine import AncestryEngine, discover_classes
from ancestry.core.errors import AnalysisCancelled, CancellationToken
from ancestry.core.models import ClassRole, TypeInfoKind
from ancestry.image.memory import BinaryImage
from ancestry.output.report import AncestryReportGenerator


def make_engine(
    config: AncestryConfig,
    logger: AncestryLogger,
    scenario: VirtualBasesScenario | None = None,
    detector: FakeDetector | None = None,
) -> AncestryEngine:
    names = scenario.names if scenario is not None else {}
    detector = detector or FakeDetector(scenario.stores if scenario is not None else {})
    return AncestryEngine(
        config=config,
        logger=logger,
        demangler=FakeDemangler(names),
        detector_factory=lambda image: detector,
    )


class TestDiscovery:
    def test_symbols_and_data_scan(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        hidden = builder.type_info("1H", symbol=False)
        session = make_session(builder.build())
        assert [c.address for c in discover_classes(session)] == [a, hidden]

    def test_symbols_only(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        builder.type_info("1H", symbol=False)
        session = make_session(builder.build())
        session.config.scan_data_for_type_info = False
        assert [c.address for c in discover_classes(session)] == [a]

    def test_relocated_root_reference(self) -> None:
        b = ImageBuilder()
        name = b.string("1R")
        b.align()
        ti = b.reloc("_ZTVN10__cxxabiv117__class_type_infoE", addend=16)
        b.word(name)
        session = make_session(b.build())
        assert [c.address for c in discover_classes(session)] == [ti]


class TestAnalyzeImage:
    def test_virtual_bases(self, virtual_bases, config, quiet_logger) -> None:
        s = virtual_bases
        result = make_engine(config, quiet_logger, s).analyze_image(s.builder.build())

        assert [c.address for c in result.classes] == [s.a, s.b, s.d]
        assert result.failed == []
        a, b, d = result.classes

        assert d.name == "D"
        assert d.kind == TypeInfoKind.MULTIPLE_OR_VIRTUAL
        assert [(p.address, p.is_virtual) for p in d.parents] == [(s.a, True), (s.b, True)]
        assert d.virtual_parents == [s.a, s.b]
        assert d.vtt == s.d_points
        assert [t.address_point for t in d.vtable.tables] == s.d_points
        assert [t.base_address for t in d.vtable.tables] == [None, s.a, s.b]
        assert [(x.function.address, x.class_address, x.role) for x in d.assignments] == [
            (s.d_ctor, s.d, ClassRole.CONSTRUCTOR),
            (s.d_dtor, s.d, ClassRole.DESTRUCTOR),
            (s.a_ctor, s.a, ClassRole.CONSTRUCTOR),
            (s.b_ctor, s.b, ClassRole.CONSTRUCTOR),
        ]

        assert [x.function.address for x in a.assignments] == [s.a_ctor]
        assert [x.function.address for x in b.assignments] == [s.b_ctor]
        assert not a.abstract and a.vtt == []

    def test_class_filter(self, virtual_bases, config, quiet_logger) -> None:
        s = virtual_bases
        result = make_engine(config, quiet_logger, s).analyze_image(
            s.builder.build(), class_filter="D"
        )
        assert [c.address for c in result.classes] == [s.d]

    def test_constructor_detection_disabled(self, virtual_bases, config, quiet_logger) -> None:
        s = virtual_bases
        config.rtti.detect_constructors = False
        detector = FakeDetector(s.stores)
        result = make_engine(config, quiet_logger, s, detector).analyze_image(s.builder.build())

        assert all(c.assignments == [] for c in result.classes)
        assert detector.calls == []

    def test_each_function_scanned_once(self, virtual_bases, config, quiet_logger) -> None:
        s = virtual_bases
        detector = FakeDetector(s.stores)
        image = s.builder.build()
        make_engine(config, quiet_logger, s, detector).analyze_image(image)
        assert sorted(detector.calls) == [f.address for f in image.functions()]

    def test_malformed_class_does_not_stop_the_run(self, builder, config, quiet_logger) -> None:
        a = builder.type_info("1A")
        bad = builder.type_info("3Bad", TypeInfoKind.SINGLE, [0x1234])
        result = make_engine(config, quiet_logger).analyze_image(builder.build())

        assert [c.address for c in result.classes] == [a, bad]
        (failed,) = result.failed
        assert failed.address == bad
        assert "0x1234" in failed.error
        assert failed.type_name == "3Bad"

    def test_non_itanium_image(self, builder, config, quiet_logger) -> None:
        builder.type_info("1A")
        result = make_engine(config, quiet_logger).analyze_image(builder.build(itanium_abi=False))
        assert result.classes == []
        assert not result.info.itanium_abi

    def test_cancelled_before_start(self, virtual_bases, config, quiet_logger) -> None:
        token = CancellationToken()
        token.cancel()
        engine = make_engine(config, quiet_logger, virtual_bases)
        with pytest.raises(AnalysisCancelled):
            engine.analyze_image(virtual_bases.builder.build(), cancel=token)


class TestReport:
    def test_build(self, virtual_bases, config, quiet_logger, tmp_path: Path) -> None:
        s = virtual_bases
        result = make_engine(config, quiet_logger, s).analyze_image(s.builder.build())
        gen = AncestryReportGenerator()

        doc = gen.build(result)
        assert doc["report_type"] == "ancestry_class_hierarchy"
        assert doc["class_count"] == 3 and doc["failed_count"] == 0
        d = doc["classes"][2]
        assert d["name"] == "D"
        assert d["vtt"] == [f"0x{p:x}" for p in s.d_points]
        assert [x["role"] for x in d["assignments"]][:2] == ["constructor", "destructor"]

        path = gen.generate_json(result, str(tmp_path / "out" / "report.json"))
        assert json.loads(Path(path).read_text())["class_count"] == 3


class TestFileEntryPoints:
    def test_analyze_file(self, tmp_path: Path, config, quiet_logger) -> None:
        path = tmp_path / "libfoo.so"
        path.write_bytes(build_elf())
        engine = make_engine(config, quiet_logger)

        result = asyncio.run(engine.analyze(str(path)))
        assert result.info.path == str(path.resolve())
        assert result.info.itanium_abi
        assert result.classes == []
        assert engine.analyze_sync(str(path)).info.sha256 == result.info.sha256

    def test_cli_json(self, tmp_path: Path) -> None:
        path = tmp_path / "libfoo.so"
        path.write_bytes(build_elf())
        result = CliRunner().invoke(ancestry_cli, [str(path), "--json", "--no-ctors"])
        assert result.exit_code == 0, result.output
        assert '"class_count": 0' in result.output

    def test_cli_rejects_non_elf(self, tmp_path: Path) -> None:
        path = tmp_path / "notes.txt"
        path.write_text("plain text " * 10)
        result = CliRunner().invoke(ancestry_cli, [str(path)])
        assert result.exit_code == 1
        assert "Ancestry v" in result.output


class TestDefaultDetector:
    @staticmethod
    def _unsized_constructor() -> tuple[ImageBuilder, int]:
        b = ImageBuilder()
        b.words(0, 0, 0, 0)
        f = TEXT_BASE
        b.text += lea_rax(f, VT) + MOV_RDI_RAX + RET
        b.symbol("_ZN1AC2Ev", f, 0, is_function=True)
        return b, f

    def test_reads_unsized_functions_up_to_the_limit(self, config, quiet_logger) -> None:
        b, f = self._unsized_constructor()
        image = b.build()
        detector = AncestryEngine(config=config, logger=quiet_logger).create_detector(image)
        assert [s.site for s in detector.stores(image.function_at(f))] == [f + 7]

    def test_max_function_size_is_honoured(self, config, quiet_logger) -> None:
        b, f = self._unsized_constructor()
        image = b.build()
        config.rtti.max_function_size = 7
        detector = AncestryEngine(config=config, logger=quiet_logger).create_detector(image)
        assert detector.stores(image.function_at(f)) == []

    def test_none_for_other_architectures(self, config, quiet_logger) -> None:
        image = BinaryImage([], arch="mips")
        assert AncestryEngine(config=config, logger=quiet_logger).create_detector(image) is None
