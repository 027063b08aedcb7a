"""Discord-relayed website support widget."""

__version__ = "0.1.0"
