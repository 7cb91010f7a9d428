"""
SDK for Decision Analytics.

Provides instrumentation helpers for rule engines that report atom usage.
"""

from .tracker import AtomTracker

__all__ = ["AtomTracker"]
