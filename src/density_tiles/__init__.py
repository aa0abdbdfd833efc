"""Cache-aside tile server for an external density renderer."""

__version__ = "1.0.0"
