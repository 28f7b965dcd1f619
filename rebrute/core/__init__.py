"""Core search engine components for rebrute."""

__all__ = [
    "SearchOrchestrator",
    "SearchOptions",
    "SearchPolicy",
    "RecoveredMetadata",
    "SwitchSelection",
    "CandidateGenerator",
    "VersionMatrix",
    "CandidateExecutor",
    "Verifier",
    "VerificationTarget",
    "ResultCollector",
]


def __getattr__(name):
    """Lazy import of the engine modules."""
    if name == 'SearchOrchestrator':
        from .orchestrator import SearchOrchestrator
        return SearchOrchestrator
    elif name in ('SearchOptions', 'SearchPolicy', 'RecoveredMetadata'):
        from . import options
        return getattr(options, name)
    elif name == 'SwitchSelection':
        from .switches import SwitchSelection
        return SwitchSelection
    elif name == 'CandidateGenerator':
        from .candidates import CandidateGenerator
        return CandidateGenerator
    elif name == 'VersionMatrix':
        from .versions import VersionMatrix
        return VersionMatrix
    elif name == 'CandidateExecutor':
        from .executor import CandidateExecutor
        return CandidateExecutor
    elif name in ('Verifier', 'VerificationTarget'):
        from . import verification
        return getattr(verification, name)
    elif name == 'ResultCollector':
        from .results import ResultCollector
        return ResultCollector
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
