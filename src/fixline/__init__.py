"""fixline: hand debugging work from an AI coding agent to a human engineer."""

__version__ = "0.3.0"
