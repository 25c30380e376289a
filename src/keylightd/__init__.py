"""keylightd - discovery and control daemon for networked key lights."""

__version__ = "0.1.0"
