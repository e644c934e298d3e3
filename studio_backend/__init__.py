"""Request handlers and building blocks for the Studio Activity plugin backend."""

__version__ = "0.1.0"