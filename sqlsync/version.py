"""Version information for sqlsync.

Reads the package version from the installed package metadata.
"""

from importlib.metadata import version

__version__ = version("sqlsync")
