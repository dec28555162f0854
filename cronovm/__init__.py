"""Loader and interpreter for CVM1 virtual machine images."""

__version__ = "0.4.0"

__all__ = ["errors", "isa", "image", "floatops", "interpreter"]