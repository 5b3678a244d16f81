"""Zero-downtime model version switching for inference servers."""

__version__ = "0.1.0"
