"""
Defines the package's version string.

This is the single source of truth for the version number. It is used by the
command-line front end and for packaging.
"""

__version__ = "0.4.0"
