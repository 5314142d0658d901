"""ROBEKC GAMES top-up backend: order lifecycle, payment confirmation, notifications."""

__version__ = "1.0.0"
