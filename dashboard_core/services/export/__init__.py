"""
Export package.

Requests server-rendered artifacts and saves them on the host.
"""

from .artifacts import InMemoryArtifact, LocalDirectorySink, resolve_filename
from .pipeline import ExportPipeline, LoggingExportNotifier

__all__ = [
    "ExportPipeline",
    "LoggingExportNotifier",
    "InMemoryArtifact",
    "LocalDirectorySink",
    "resolve_filename",
]
