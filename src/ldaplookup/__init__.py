"""Look up users in LDAP or Active Directory by email address."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

__version__: str
"""The version string of ldaplookup."""

try:
    __version__ = version("ldaplookup")
except PackageNotFoundError:
    __version__ = "0.0.0"
