"""Local execution control plane for AI coding-agent automation loops."""

__version__ = "0.4.0"
