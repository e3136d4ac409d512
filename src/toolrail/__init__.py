"""toolrail - contract-enforced tool dispatch for conversational agents."""

__version__ = "0.1.0"
