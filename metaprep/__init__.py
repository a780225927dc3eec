"""metaprep: metagenomic read preprocessing pipeline."""

__version__ = "0.1.0"
