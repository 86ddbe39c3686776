"""Permission governance for an AWS agent working beside a human developer."""

__version__ = "0.4.0"
