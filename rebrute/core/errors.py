"""
Search Error Taxonomy
=====================

Only setup-time problems and storage failures abort a search. Everything
raised per candidate is caught by the orchestrator, logged and skipped.
"""

from __future__ import annotations

from typing import Optional


class RebruteError(Exception):
    """Base class for all search errors."""


class ConfigurationError(RebruteError):
    """Missing installations, empty verification set, bad paths. Fatal."""


class ExecutionError(RebruteError):
    """The compressor failed to start, timed out or exited unexpectedly."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class StorageFatalError(RebruteError):
    """The output directory cannot be written or read. Aborts the search."""


class HeaderPatchError(RebruteError):
    """A produced volume has a header the patch pass cannot rewrite."""
