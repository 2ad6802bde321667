"""Audit architecture-namespaced registries for stale top-level manifest lists."""

__version__ = "0.1.0"
