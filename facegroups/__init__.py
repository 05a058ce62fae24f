"""
Core package init for the face grouping engine.

Makes the `facegroups` modules importable without requiring an editable install.
"""

__all__ = [
    "clustering",
    "history",
    "quality",
    "recognition",
    "storage",
    "config",
    "engine",
    "errors",
    "events",
    "io_utils",
    "types",
]
