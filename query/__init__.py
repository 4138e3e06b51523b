"""
Query Module

Lexical safety checks for read-only SQL submitted against the relational tier.
"""

__version__ = "0.1.0"
