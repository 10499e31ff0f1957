"""
Program Registry Module.

Maps logical program names to content-addressed program images.
"""

from zkcompose.core.registry.program_registry import (
    ProgramRegistry,
    builtin_registry,
)

__all__ = [
    "ProgramRegistry",
    "builtin_registry",
]
