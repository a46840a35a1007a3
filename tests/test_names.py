"""Tests for type name reading, lookup by name and display names."""

from __future__ import annotations

import pytest

from conftest import DATA_BASE, FakeDemangler, ImageBuilder, make_session

from ancestry.analyzers.names import (
    CxxFiltDemangler,
    demangled_name,
    find_type_info,
    short_name,
    split_qualified,
)
from ancestry.core.errors import AnalysisCancelled, CancellationToken


class TestFindTypeInfo:
    def test_unique_name_is_found(self, builder: ImageBuilder) -> None:
        builder.type_info("1A")
        b = builder.type_info("1B")
        session = make_session(builder.build())

        found = find_type_info(session, None, "1B")
        assert found is not None
        assert found.address == b

    def test_duplicate_string_is_ambiguous(self, builder: ImageBuilder) -> None:
        builder.type_info("1A")
        builder.string("1A")
        session = make_session(builder.build())
        assert find_type_info(session, None, "1A") is None

    def test_absent_name(self, builder: ImageBuilder) -> None:
        builder.type_info("1A")
        session = make_session(builder.build())
        assert find_type_info(session, None, "3Foo") is None
        assert find_type_info(session, None, "") is None

    def test_string_without_type_info_reference(self, builder: ImageBuilder) -> None:
        builder.string("3Foo")
        session = make_session(builder.build())
        assert find_type_info(session, None, "3Foo") is None

    def test_suffix_of_longer_string_is_ignored(self, builder: ImageBuilder) -> None:
        builder.raw(b"X3Bar\x00")
        bar = builder.type_info("3Bar")
        session = make_session(builder.build())

        found = find_type_info(session, None, "3Bar")
        assert found is not None and found.address == bar

    def test_search_range_limits_hits(self, builder: ImageBuilder) -> None:
        builder.type_info("1A")
        session = make_session(builder.build())
        assert find_type_info(session, (DATA_BASE, DATA_BASE + 8), "1A") is None

    def test_cancelled_token_raises(self, builder: ImageBuilder) -> None:
        builder.type_info("1A")
        session = make_session(builder.build())
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            find_type_info(session, None, "1A", token)


class TestUniqueTypeName:
    def test_same_source_same_name_across_images(self) -> None:
        names = []
        for padding in (0, 24):
            b = ImageBuilder()
            b.raw(b"\x00" * padding)
            b.cxxabi_roots()
            ti = b.type_info("N2ns3FooE")
            session = make_session(b.build())
            names.append((ti, session.type_info_at(ti).unique_type_name))

        (first_addr, first), (second_addr, second) = names
        assert first_addr != second_addr
        assert first == second == "ns::Foo"

    def test_undemanglable_name_falls_back_to_mangled(self, builder: ImageBuilder) -> None:
        ti = builder.type_info("Z9weird")
        session = make_session(builder.build())
        cls = session.type_info_at(ti)
        assert cls.unique_type_name == "Z9weird"
        assert cls.name == "Z9weird"

    def test_demangled_name_strips_prefix(self) -> None:
        assert demangled_name("N2ns3FooE", FakeDemangler()) == "ns::Foo"
        assert demangled_name("", FakeDemangler()) is None


class TestNameHelpers:
    def test_split_qualified_keeps_template_arguments(self) -> None:
        assert split_qualified("ns::Foo<std::string>::Bar") == ["ns", "Foo<std::string>", "Bar"]
        assert split_qualified("f(a::b)") == ["f(a::b)"]
        assert split_qualified("Plain") == ["Plain"]

    def test_short_name(self) -> None:
        demangler = FakeDemangler({
            "_ZN2ns3FooD2Ev": "ns::Foo::~Foo()",
            "_ZN2ns3BarIiEC1Ei": "ns::Bar<std::pair<int, int> >::Bar(int)",
        })
        assert short_name("_ZN2ns3FooD2Ev", demangler) == "~Foo"
        assert short_name("_ZN2ns3BarIiEC1Ei", demangler) == "Bar"
        assert short_name("plain_c_function", demangler) == "plain_c_function"
        assert short_name("", demangler) == ""


class TestCxxFiltDemangler:
    @pytest.fixture
    def demangler(self) -> CxxFiltDemangler:
        demangler = CxxFiltDemangler()
        try:
            demangler.demangle("_ZTIi")
        except Exception as exc:  # no C++ runtime library on this host
            pytest.skip(f"cxxfilt unavailable: {exc}")
        return demangler

    def test_type_info_symbol(self, demangler: CxxFiltDemangler) -> None:
        assert demangler.demangle("_ZTIN2ns3FooE") == "typeinfo for ns::Foo"

    def test_not_mangled(self, demangler: CxxFiltDemangler) -> None:
        assert demangler.demangle("main") is None
