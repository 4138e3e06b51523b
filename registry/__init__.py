"""
Registry Module

Tiered dataset storage behind a uniform handle.

This module provides:
- Size-based tier selection (in-memory Arrow table, memory-mapped Arrow IPC
  file, SQLite table)
- Uniform handles with scan, filter pushdown, aggregate and collect
- Promotion of any dataset into the relational tier for SQL access
- Per-name write locking and a single lock for the shared SQLite connection
- Format loaders for delimited text, Parquet, Arrow/Feather and JSON
"""

__version__ = "0.1.0"
