"""
Ancestry Shared Module
======================

Configuration, logging and console helpers shared by every Ancestry
component.
"""

from shared.config import AncestryConfig, get_config

__all__ = ["AncestryConfig", "get_config"]
