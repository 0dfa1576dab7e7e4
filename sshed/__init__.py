"""sshed: SSH config editor and hosts manager."""

__version__ = "0.1.0"
