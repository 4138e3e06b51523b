"""
Server Module

Request dispatcher, response formatting and the command line entry point.
"""

__version__ = "0.1.0"
