"""Local console for managing remote Contao Manager installations."""

__version__ = "0.1.0"
