"""vmforge: uniform lifecycle management for virtual machines across backends."""

__version__ = "0.1.0"
