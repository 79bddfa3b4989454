"""Lab-Sieve: bulk export of lab results with reference-range classification."""

__version__ = "1.0.0"
