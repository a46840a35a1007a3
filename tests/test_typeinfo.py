"""Tests for type_info identification and the per-session class arena."""

from __future__ import annotations

import threading

from conftest import ROOT_VTABLES, ImageBuilder, make_session

from ancestry.analyzers.typeinfo import identify
from ancestry.core.models import DatumKind, TypeInfoKind
from ancestry.core.session import RttiRoots


class TestIdentify:
    def test_kinds_follow_vptr(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        b = builder.type_info("1B", TypeInfoKind.SINGLE, [a])
        c = builder.type_info("1C", TypeInfoKind.MULTIPLE_OR_VIRTUAL, [(a, 0, False, True)])
        image = builder.build()
        roots = RttiRoots.resolve(image)

        assert identify(image, roots, a).kind == TypeInfoKind.BASE
        assert identify(image, roots, b).kind == TypeInfoKind.SINGLE
        assert identify(image, roots, c).kind == TypeInfoKind.MULTIPLE_OR_VIRTUAL

    def test_identify_is_idempotent(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        image = builder.build()
        roots = RttiRoots.resolve(image)

        first = identify(image, roots, a)
        second = identify(image, roots, a)
        assert first == second
        assert hash(first) == hash(second)
        assert first.type_name == second.type_name == "1A"

    def test_garbage_and_unmapped_addresses(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        plain = builder.words(0x1234, 0x5678)
        image = builder.build()
        roots = RttiRoots.resolve(image)

        assert identify(image, roots, plain) is None
        assert identify(image, roots, a + 1) is None
        assert identify(image, roots, 0xDEAD0000) is None
        assert identify(image, roots, -8) is None

    def test_relocation_against_root_symbol(self) -> None:
        b = ImageBuilder()
        name = b.string("3Foo")
        b.align()
        ti = b.reloc(ROOT_VTABLES[TypeInfoKind.SINGLE], addend=16)
        b.word(name)
        b.word(0)
        image = b.build()
        roots = RttiRoots.resolve(image)

        result = identify(image, roots, ti)
        assert result is not None
        assert result.kind == TypeInfoKind.SINGLE

    def test_type_name_materializes_string(self, builder: ImageBuilder) -> None:
        a = builder.type_info("N2ns3FooE")
        image = builder.build()
        ti = identify(image, RttiRoots.resolve(image), a)

        assert image.data_at(ti.name_address) is None
        assert ti.type_name == "N2ns3FooE"
        datum = image.data_at(ti.name_address)
        assert datum is not None and datum.kind == DatumKind.STRING

    def test_local_name_marker_is_stripped(self, builder: ImageBuilder) -> None:
        a = builder.type_info("*N12_GLOBAL__N_15LocalE")
        image = builder.build()
        assert identify(image, RttiRoots.resolve(image), a).type_name == "N12_GLOBAL__N_15LocalE"

    def test_unreadable_name_is_empty(self, builder: ImageBuilder) -> None:
        builder.align()
        ti = builder.words(builder.roots[TypeInfoKind.BASE], 0xBAD00000)
        image = builder.build()
        assert identify(image, RttiRoots.resolve(image), ti).type_name == ""


class TestSessionArena:
    def test_one_node_per_address(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        session = make_session(builder.build())

        assert session.type_info_at(a) is session.type_info_at(a)
        assert session.type_info_at(a + 8) is None
        assert [c.address for c in session.classes()] == [a]

    def test_concurrent_lookups_converge(self, builder: ImageBuilder) -> None:
        a = builder.type_info("1A")
        session = make_session(builder.build())
        seen = []

        def lookup() -> None:
            seen.append(session.type_info_at(a))

        threads = [threading.Thread(target=lookup) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(node is seen[0] for node in seen)

    def test_pure_virtual_marker_resolved_once(self, builder: ImageBuilder) -> None:
        pure = builder.function("__cxa_pure_virtual")
        session = make_session(builder.build())

        assert session.roots.pure_virtual_address == pure
        assert session.is_pure_virtual(pure)
        assert session.is_pure_virtual(None, "__cxa_pure_virtual")
        assert not session.is_pure_virtual(pure + 16)
