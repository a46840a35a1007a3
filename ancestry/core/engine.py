"""
Ancestry Analysis Engine
=========================

Orchestrates class-hierarchy recovery over a whole image:

    1. Load the ELF file into a memory image
    2. Check that the image was built by an Itanium C++ ABI toolchain
    3. Discover class ``type_info`` structures (``_ZTI`` symbols, then a
       data scan for pointers to the ``__cxxabiv1`` type_info vtables)
    4. Per class: base graph, virtual bases, vtable, VTT, abstractness
    5. Per class: correlate constructors and destructors through their
       vtable-pointer stores

Classes are independent once discovery has finished, so step 4 and 5
run on a thread pool.  A class with malformed base descriptors is
reported with ``error`` set and does not stop the run; cancellation
does.

Usage::

    engine = AncestryEngine()
    result = engine.analyze_sync("/path/to/program")
    for cls in result.classes:
        print(cls.name, [p.name for p in cls.parents])
"""

from __future__ import annotations

import asyncio
import hashlib
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from shared.config import AncestryConfig
from shared.logger import AncestryLogger

from ancestry.analyzers.base_graph import ancestors
from ancestry.analyzers.correlator import correlate
from ancestry.analyzers.names import Demangler
from ancestry.analyzers.typeinfo import ClassTypeInfo
from ancestry.analyzers.vptr_stores import CapstoneStoreDetector, VtablePointerStoreDetector
from ancestry.core.errors import CancellationToken, MalformedTypeInfo
from ancestry.core.models import (
    BaseClassReport,
    ClassReport,
    Function,
    HierarchyAnalysisResult,
    ImageInfo,
    SlotReport,
    SubTableReport,
    Vtable,
    VtableReport,
    VptrStore,
)
from ancestry.core.session import AnalysisSession, RttiRoots
from ancestry.image.base import MemoryImage
from ancestry.parsers.elf_parser import load_elf

DetectorFactory = Callable[[MemoryImage], Optional[VtablePointerStoreDetector]]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def discover_classes(session: AnalysisSession) -> list[ClassTypeInfo]:
    """Every class ``type_info`` of the image, ordered by address.

    ``_ZTI`` symbols are used first.  With ``scan_data_for_type_info``
    enabled, data words pointing at (or relocated against) one of the
    ``__cxxabiv1`` type_info vtables are added as well, which recovers
    classes of stripped binaries.
    """
    image = session.image
    config = session.config
    candidates: set[int] = set()

    for symbol in image.symbols_with_prefix(config.type_info_symbol_prefix):
        candidates.add(symbol.address)

    if config.scan_data_for_type_info:
        for address_point in session.roots.address_points:
            session.check_cancelled()
            candidates.update(
                image.find_direct_references(address_point, image.pointer_size, session.cancel)
            )
        for reloc in image.relocations():
            if reloc.symbol is not None and RttiRoots.kind_for_symbol(reloc.symbol) is not None:
                candidates.add(reloc.address)

    classes: list[ClassTypeInfo] = []
    for address in sorted(candidates):
        session.check_cancelled()
        node = session.type_info_at(address)
        if node is not None:
            classes.append(node)
    return classes


# ---------------------------------------------------------------------------
# Store index
# ---------------------------------------------------------------------------

class _StoreIndex:
    """Lazily built map from stored pointer value to the storing functions."""

    def __init__(self, image: MemoryImage, detector: VtablePointerStoreDetector) -> None:
        self._image = image
        self._detector = detector
        self._lock = threading.Lock()
        self._by_value: Optional[dict[int, list[Function]]] = None
        self.cache: dict[int, list[VptrStore]] = {}

    @property
    def detector(self) -> VtablePointerStoreDetector:
        return self._detector

    def functions_storing(self, values: set[int], cancel: Optional[CancellationToken]) -> list[Function]:
        with self._lock:
            if self._by_value is None:
                self._by_value = self._build(cancel)
        seen: dict[int, Function] = {}
        for value in values:
            for function in self._by_value.get(value, ()):
                seen.setdefault(function.address, function)
        return [seen[a] for a in sorted(seen)]

    def _build(self, cancel: Optional[CancellationToken]) -> dict[int, list[Function]]:
        index: dict[int, list[Function]] = {}
        for function in self._image.functions():
            if cancel is not None:
                cancel.check()
            stores = [s for s in self._detector.stores(function) if s.on_this]
            self.cache[function.address] = stores
            for value in {s.value for s in stores}:
                index.setdefault(value, []).append(function)
        return index


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AncestryEngine:
    """Runs RTTI and class-hierarchy recovery over a program.

    Args:
        config:           Toolkit configuration.  Defaults are used if
                          not provided.
        logger:           Logger instance.  A new one is created if not
                          provided.
        demangler:        Demangler override (tests use a fake one).
        detector_factory: Builds the vtable-pointer store detector for
                          an image; return ``None`` to skip correlation.
    """

    def __init__(
        self,
        config: AncestryConfig | None = None,
        logger: AncestryLogger | None = None,
        *,
        demangler: Demangler | None = None,
        detector_factory: DetectorFactory | None = None,
    ) -> None:
        self._config: AncestryConfig = config or AncestryConfig()
        self._logger: AncestryLogger = logger or AncestryLogger(
            "engine",
            log_level=self._config.global_settings.log_level,
            log_file=self._config.global_settings.log_file or None,
            json_logs=self._config.global_settings.log_json,
        )
        self._demangler = demangler
        self._detector_factory: DetectorFactory = detector_factory or self.create_detector

    def create_detector(self, image: MemoryImage) -> Optional[VtablePointerStoreDetector]:
        """Capstone store detector for *image*, or ``None`` for other architectures."""
        try:
            return CapstoneStoreDetector(image, max_function_size=self._config.rtti.max_function_size)
        except ValueError:
            return None

    # ------------------------------------------------------------------ #
    #  Entry points
    # ------------------------------------------------------------------ #

    async def analyze(
        self,
        file_path: str,
        class_filter: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> HierarchyAnalysisResult:
        """Load *file_path* and recover its class hierarchy.

        The CPU-bound work runs in the default executor.

        Raises:
            ImageLoadError: the file is not a loadable ELF image.
            AnalysisCancelled: *cancel* was triggered.
        """
        self._logger.info(f"Starting analysis of {file_path}")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._run_file, file_path, class_filter, cancel)

    def analyze_sync(
        self,
        file_path: str,
        class_filter: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> HierarchyAnalysisResult:
        """Synchronous wrapper around :meth:`analyze`."""
        return asyncio.run(self.analyze(file_path, class_filter, cancel))

    def _run_file(
        self,
        file_path: str,
        class_filter: Optional[str],
        cancel: Optional[CancellationToken],
    ) -> HierarchyAnalysisResult:
        with self._logger.operation("load"):
            image, info = load_elf(file_path)
            info.size = Path(file_path).stat().st_size
            info.sha256 = hashlib.sha256(Path(file_path).read_bytes()).hexdigest()
            self._logger.info(
                f"Loaded {info.arch} {info.bits}-bit image: "
                f"{len(image.blocks)} blocks, {len(image.functions())} functions"
            )
        return self.analyze_image(image, info, class_filter=class_filter, cancel=cancel)

    def analyze_image(
        self,
        image: MemoryImage,
        info: ImageInfo | None = None,
        *,
        class_filter: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> HierarchyAnalysisResult:
        """Recover every class of an already loaded *image*.

        Args:
            image:        The program.
            info:         Metadata copied into the result.
            class_filter: Keep only classes whose demangled, unique or
                          mangled name equals this string.
            cancel:       Cooperative cancellation token.

        Raises:
            AnalysisCancelled: *cancel* was triggered.
        """
        started = time.perf_counter()
        info = info or ImageInfo(
            arch=image.arch,
            bits=8 * image.pointer_size,
            endian=image.endian,
            itanium_abi=image.is_itanium_abi(),
        )
        result = HierarchyAnalysisResult(info=info)

        if not image.is_itanium_abi():
            self._logger.warning("Image was not built with an Itanium C++ ABI toolchain; skipping")
            return result

        rtti = self._config.rtti
        session = AnalysisSession(image, demangler=self._demangler, config=rtti, cancel=cancel)
        result.pure_virtual_address = session.roots.pure_virtual_address
        if not session.roots.address_points:
            self._logger.debug("No __cxxabiv1 type_info vtables defined; relying on relocations")

        with self._logger.operation("discover"), self._logger.timed("type_info discovery"):
            classes = discover_classes(session)
        self._logger.info(f"Discovered {len(classes)} class type_info structures")

        if class_filter:
            classes = [c for c in classes if class_filter in (c.name, c.unique_type_name, c.type_name)]

        index: Optional[_StoreIndex] = None
        if rtti.detect_constructors:
            detector = self._detector_factory(image)
            if detector is None:
                self._logger.warning(f"No vtable-pointer store detector for {image.arch}")
            else:
                index = _StoreIndex(image, detector)

        workers = max(1, self._config.global_settings.max_workers)
        with self._logger.timed("class recovery"):
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(self._analyze_class, session, cls, index) for cls in classes]
                try:
                    result.classes = [future.result() for future in futures]
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        result.duration_seconds = time.perf_counter() - started
        failed = len(result.failed)
        self._logger.info(
            f"Recovered {len(result.classes)} classes"
            + (f" ({failed} malformed)" if failed else "")
        )
        return result

    # ------------------------------------------------------------------ #
    #  Per-class recovery
    # ------------------------------------------------------------------ #

    def _analyze_class(
        self,
        session: AnalysisSession,
        cls: ClassTypeInfo,
        index: Optional[_StoreIndex],
    ) -> ClassReport:
        report = ClassReport(address=cls.address, kind=cls.kind)
        with self._logger.for_class(cls.address):
            try:
                report.type_name = cls.type_name
                report.name = cls.name

                with self._logger.operation("bases"):
                    report.parents = [
                        BaseClassReport(
                            address=edge.type_info.address,
                            name=edge.type_info.name,
                            offset=edge.offset,
                            is_virtual=edge.is_virtual,
                            is_public=edge.is_public,
                        )
                        for edge in cls.parents
                    ]
                    report.virtual_parents = [v.address for v in cls.virtual_parents]

                with self._logger.operation("vtable"):
                    vtable = cls.vtable
                    if vtable.is_valid:
                        report.vtable = self._vtable_report(vtable)
                    report.abstract = cls.abstract

                with self._logger.operation("vtt"):
                    vtt = cls.vtt
                    if vtt is not None:
                        report.vtt = list(vtt.entries)

                if index is not None and vtable.is_valid:
                    with self._logger.operation("correlate"):
                        candidates = index.functions_storing(
                            self._address_points(cls), session.cancel
                        )
                        report.assignments = correlate(
                            session, cls, vtable, vtt, candidates, index.detector,
                            store_cache=index.cache,
                        )
            except MalformedTypeInfo as exc:
                self._logger.warning(f"Malformed type_info: {exc}")
                report.error = str(exc)
        return report

    @staticmethod
    def _address_points(cls: ClassTypeInfo) -> set[int]:
        points = set(cls.vtable.table_addresses())
        for base in ancestors(cls):
            points.update(base.vtable.table_addresses())
        return points

    @staticmethod
    def _vtable_report(vtable: Vtable) -> VtableReport:
        return VtableReport(
            address=vtable.address,
            tables=[
                SubTableReport(
                    address_point=table.address_point,
                    offset_to_top=table.offset_to_top,
                    base_address=table.base_address,
                    slots=[
                        SlotReport(
                            address=slot.address,
                            name=(slot.function.name if slot.function else slot.symbol) or "",
                            is_pure_virtual=slot.is_pure_virtual,
                        )
                        for slot in table.slots
                    ],
                )
                for table in vtable.tables
            ],
        )
