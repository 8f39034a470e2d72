"""Layer-2 transaction load generator and block turner."""

__version__ = "0.1.0"
