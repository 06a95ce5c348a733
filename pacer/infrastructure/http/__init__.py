"""Outbound HTTP transport adapters."""
