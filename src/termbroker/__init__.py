"""termbroker — interactive shells over pseudo-terminals, fanned out to many readers."""

__version__ = "0.1.0"
