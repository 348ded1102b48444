"""LUDUS activity marketplace backend."""

__version__ = "0.4.0"
