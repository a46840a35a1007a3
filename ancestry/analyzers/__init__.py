"""RTTI, vtable and VTT analyzers."""
