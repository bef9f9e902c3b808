"""credvault-server: token lifecycle and third-party credential vault."""

__version__ = "0.1.0"
