"""ragnote: retrieval-augmented chat over a personal notes vault."""

__version__ = "0.1.0"
