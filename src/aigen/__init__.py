"""Generation orchestration engine for AI image and video features."""

__version__ = "0.1.0"
