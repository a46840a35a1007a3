"""
Ancestry Configuration Management
==================================

Centralized configuration for the Ancestry RTTI recovery toolkit using
Python dataclasses and TOML-based persistence.

Every heuristic bound used while walking ``type_info`` structures,
vtables and VTTs lives here so that a run over an unusual binary can be
tuned without touching code.

References:
    - Itanium C++ ABI, section 2.9 (Run-Time Type Information).
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[no-redef]


# ---------------------------------------------------------------------------
# Default configuration file path relative to the project root
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "ancestry.toml"


# ========================== RTTI analysis settings =========================


@dataclass(frozen=False, slots=True)
class RttiConfig:
    """Bounds and switches for RTTI, vtable and VTT recovery.

    ``max_offset_to_top`` bounds the magnitude of any word that is read
    as an offset-to-top or vcall/vbase offset; anything larger is taken
    to be a pointer.
    """

    max_base_count: int = 256
    max_offset_to_top: int = 0x10_0000
    max_vcall_offsets: int = 64
    max_vtt_entries: int = 512
    pure_virtual_symbol: str = "__cxa_pure_virtual"
    type_info_symbol_prefix: str = "_ZTI"
    scan_data_for_type_info: bool = True
    detect_constructors: bool = True
    max_function_size: int = 0x4000


# =========================== Global Settings ===============================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Global settings: logging and worker pool size."""

    log_level: str = "INFO"
    log_file: str = ""
    log_json: bool = False
    max_workers: int = 4


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class AncestryConfig:
    """Master configuration aggregating global and analysis settings.

    Usage:
        >>> config = AncestryConfig.load()                  # from default path
        >>> config = AncestryConfig.load("custom.toml")     # from custom path
        >>> config.rtti.max_base_count
        256
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    rtti: RttiConfig = field(default_factory=RttiConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> AncestryConfig:
        """Load configuration from a TOML file.

        If *path* is ``None`` the loader looks for ``ancestry.toml`` in the
        project root.  Missing keys fall back to dataclass defaults.

        Args:
            path: Filesystem path to a TOML configuration file.

        Returns:
            A fully-populated :class:`AncestryConfig` instance.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            rtti=cls._build_section(RttiConfig, raw.get("rtti", {})),
        )

    # ------------------------------------------------------------------ #
    #  Serialisation helpers
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entire configuration tree to a plain dictionary."""
        return asdict(self)

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate a dataclass *cls* using only the keys it declares.

        Unknown keys in the TOML source are ignored so that newer config
        files still load.
        """
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)


# ========================= Module-level convenience ========================

def get_config(path: str | Path | None = None) -> AncestryConfig:
    """Module-level convenience wrapper around :meth:`AncestryConfig.load`.

    Caches the result so that repeated calls share one instance.
    """
    if not hasattr(get_config, "_cached") or path is not None:
        get_config._cached = AncestryConfig.load(path)  # type: ignore[attr-defined]
    return get_config._cached  # type: ignore[attr-defined]
