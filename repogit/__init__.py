"""Git repository client built on the git command line, with URL and ref helpers."""

__version__ = "0.1.0"