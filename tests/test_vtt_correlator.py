"""Tests for VTT parsing and constructor/destructor correlation."""

from __future__ import annotations

import pytest

from conftest import FakeDemangler, FakeDetector, ImageBuilder, VirtualBasesScenario, make_session

from ancestry.analyzers.correlator import correlate, is_destructor
from ancestry.analyzers.vtt import find_vtt, parse_vtt
from ancestry.core.errors import AnalysisCancelled, CancellationToken
from ancestry.core.models import ClassRole, Function, TypeInfoKind, VptrStore


@pytest.fixture
def scenario(virtual_bases: VirtualBasesScenario):
    s = virtual_bases
    image = s.builder.build()
    session = make_session(image, FakeDemangler(s.names))
    return s, image, session


class TestVtt:
    def test_entries_follow_address_points(self, scenario) -> None:
        s, _, session = scenario
        d = session.type_info_at(s.d)

        vtt = d.vtt
        assert vtt is not None
        assert vtt.address == s.vtt
        assert vtt.entries == tuple(s.d_points)
        assert vtt.is_valid()

    def test_first_entry_must_be_primary_address_point(self, scenario) -> None:
        s, _, session = scenario
        d = session.type_info_at(s.d)
        assert parse_vtt(session, s.vtt + 8, d, d.vtable) is None

    def test_classes_without_virtual_bases_have_none(self, scenario) -> None:
        s, _, session = scenario
        a = session.type_info_at(s.a)
        assert a.vtt is None
        assert find_vtt(session, a, a.vtable) is None

    def test_found_by_reference_without_symbol(self, builder: ImageBuilder) -> None:
        s = VirtualBasesScenario(builder)
        builder.symbols = [sym for sym in builder.symbols if sym.name != "_ZTT1D"]
        session = make_session(builder.build(), FakeDemangler(s.names))

        vtt = session.type_info_at(s.d).vtt
        assert vtt is not None
        assert vtt.address == s.vtt
        assert len(vtt.entries) == 3


class TestCorrelate:
    def _run(self, scenario, *, with_vtt: bool = True, stores=None):
        s, image, session = scenario
        d = session.type_info_at(s.d)
        detector = FakeDetector(stores if stores is not None else s.stores)
        vtt = d.vtt if with_vtt else None
        return s, correlate(session, d, d.vtable, vtt, image.functions(), detector)

    def test_stores_attributed_in_vtt_order(self, scenario) -> None:
        s, assignments = self._run(scenario)

        ctor = assignments[0]
        assert ctor.function.address == s.d_ctor
        assert ctor.role == ClassRole.CONSTRUCTOR
        assert [a.class_address for a in ctor.stores] == [s.d, s.a, s.b]
        assert [a.vtt_index for a in ctor.stores] == [0, 1, 2]
        assert [a.site for a in ctor.stores] == [s.d_ctor + 0x10, s.d_ctor + 0x20, s.d_ctor + 0x30]
        assert len({a.site for a in ctor.stores}) == 3

    def test_owner_constructors_before_destructors_then_bases(self, scenario) -> None:
        s, assignments = self._run(scenario)

        got = [(a.function.address, a.class_address, a.role) for a in assignments]
        assert got == [
            (s.d_ctor, s.d, ClassRole.CONSTRUCTOR),
            (s.d_dtor, s.d, ClassRole.DESTRUCTOR),
            (s.a_ctor, s.a, ClassRole.CONSTRUCTOR),
            (s.b_ctor, s.b, ClassRole.CONSTRUCTOR),
        ]

    def test_without_vtt_only_primary_is_matched(self, scenario) -> None:
        s, assignments = self._run(scenario, with_vtt=False)

        assert [a.function.address for a in assignments] == [s.d_ctor, s.d_dtor]
        (store,) = assignments[0].stores
        assert store.value == s.d_points[0]
        assert store.class_address == s.d
        assert store.vtt_index is None

    def test_stores_into_other_objects_are_ignored(self, scenario) -> None:
        s = scenario[0]
        stores = {s.d_ctor: [VptrStore(site=s.d_ctor, value=s.d_points[0], on_this=False)]}
        _, assignments = self._run(scenario, stores=stores)
        assert assignments == []

    def test_each_function_disassembled_once(self, scenario) -> None:
        s, image, session = scenario
        d = session.type_info_at(s.d)
        detector = FakeDetector(s.stores)
        cache: dict = {}
        correlate(session, d, d.vtable, d.vtt, image.functions(), detector, store_cache=cache)
        correlate(session, d, d.vtable, d.vtt, image.functions(), detector, store_cache=cache)

        assert sorted(detector.calls) == sorted({f.address for f in image.functions()})

    def test_cancellation(self, virtual_bases: VirtualBasesScenario) -> None:
        s = virtual_bases
        image = s.builder.build()
        token = CancellationToken()
        session = make_session(image, FakeDemangler(s.names), cancel=token)
        d = session.type_info_at(s.d)
        vtable, vtt = d.vtable, d.vtt
        token.cancel()

        with pytest.raises(AnalysisCancelled):
            correlate(session, d, vtable, vtt, image.functions(), FakeDetector(s.stores))


def test_is_destructor_uses_demangled_name() -> None:
    demangler = FakeDemangler({"_ZN2ns1XD0Ev": "ns::X::~X()", "_ZN2ns1XC2Ev": "ns::X::X()"})
    assert is_destructor(Function(address=1, name="_ZN2ns1XD0Ev"), demangler)
    assert not is_destructor(Function(address=2, name="_ZN2ns1XC2Ev"), demangler)
    assert not is_destructor(Function(address=3), demangler)


class TestVttThroughSingleBase:
    def test_entries_past_the_primary_table(self, builder: ImageBuilder) -> None:
        a_f = builder.function("_ZN1A1fEv")
        e_g = builder.function("_ZN1E1gEv")
        a = builder.type_info("1A")
        d = builder.type_info("1D", TypeInfoKind.MULTIPLE_OR_VIRTUAL, [(a, -24, True, True)])
        e = builder.type_info("1E", TypeInfoKind.SINGLE, [d])
        builder.vtable("1A", a, [(0, [a_f])])
        points = builder.vtable("1E", e, [(0, [e_g]), (-8, [a_f])], vbase_offsets=(8,))
        builder.align()
        vtt = builder.words(*points)
        builder.symbol("_ZTT1E", vtt, 2 * builder.ptr)
        builder.word(0)
        session = make_session(builder.build())

        result = session.type_info_at(e).vtt
        assert result is not None
        assert result.address == vtt
        assert result.entries == tuple(points)
