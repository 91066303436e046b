"""Image-generation request bridge for NovelAI and compatible backends."""

__version__ = "1.0.0"
