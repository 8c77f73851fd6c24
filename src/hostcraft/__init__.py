"""hostcraft - declarative host state reconciler."""

__version__ = "0.1.0"
