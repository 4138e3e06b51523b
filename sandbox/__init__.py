"""
Sandbox Module

Restricted execution of submitted analysis code.

This module provides:
- Static capability manifest and execution scopes
- Path allow-list guard for file I/O
- Subprocess workers with timeout, memory and CPU limits (platform-dependent)
- Import allowlisting and deny-listed identifier stubs

WARNING: This is a best-effort in-process restriction layered on process
isolation. It is not an OS-level container or VM sandbox.
"""

__version__ = "0.1.0"
