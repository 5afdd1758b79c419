"""Excel -> DHIMS2 health record uploader."""

__version__ = "0.1.0"
