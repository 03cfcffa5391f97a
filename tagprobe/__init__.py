"""Tag-and-probe efficiency measurement for electron reconstruction, identification and trigger."""

__version__ = "1.0.0"
