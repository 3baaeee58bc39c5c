"""Local and remote photo classification with category export."""

__version__ = "0.1.0"
