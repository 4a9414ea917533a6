"""turnloop - the execution core of an AI coding assistant."""

__version__ = "0.1.0"

from turnloop.config import Config

__all__ = ["Config", "__version__"]
