"""deepdive: recursive topic research with durable fan-out/fan-in."""

__version__ = "0.1.0"
