"""Past-paper exam preparation backend: timed attempts and answer grading."""

__version__ = "0.1.0"
