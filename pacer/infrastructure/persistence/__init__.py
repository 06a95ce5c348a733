"""Durable fallback storage.

Keeps the last good payload per endpoint on disk so it can be served when a
live call is throttled.
Bounded Context: Degraded Mode
"""
