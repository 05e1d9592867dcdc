"""Firewall agent components: relay tunnelling, signing, durable state and validation."""

__version__ = "0.1.0"