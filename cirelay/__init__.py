"""cirelay: relay action runs to pluggable CI providers."""

__version__ = "0.1.0"
