"""
Core modules for Decision Analytics.

This package contains the atom, campaign and user analyzers, the
statistics they share, and the engine that wires them together.
"""
