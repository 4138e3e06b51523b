"""
Explorer Core Module

Shared building blocks for the sandboxed data explorer.

This module provides:
- Error taxonomy with stable error codes
- Pydantic schemas for datasets, execution and query results
- Configuration loading and the immutable security policy
- Logging setup for the CLI entry points
"""

__version__ = "0.1.0"
