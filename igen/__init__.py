"""igen: image-generation orchestration core."""

__version__ = "0.1.0"
