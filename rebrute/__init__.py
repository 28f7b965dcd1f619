"""rebrute - reconstruct the exact RAR parameters of a published archive."""

__version__ = "1.0.0"
