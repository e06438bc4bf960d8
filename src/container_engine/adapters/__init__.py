"""Adapters implementing the outbound ports."""
