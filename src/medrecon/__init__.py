"""Medical record extraction and source reconciliation pipeline."""

__version__ = "0.1.0"
