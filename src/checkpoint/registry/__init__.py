"""
Project registry.
"""

from checkpoint.registry.projects import (
    PROJECT_ID_FILENAME,
    ProjectRecord,
    ProjectRegistry,
    RegistryError,
)

__all__ = [
    "ProjectRegistry",
    "ProjectRecord",
    "RegistryError",
    "PROJECT_ID_FILENAME",
]
