"""DuckDB PGP Export - sharded, multi-recipient encrypted table exports."""

__version__ = "0.1.0"
