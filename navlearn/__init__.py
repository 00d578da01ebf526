"""navlearn -- online reinforcement learning for web and mobile UI automation."""

__version__ = "0.1.0"
