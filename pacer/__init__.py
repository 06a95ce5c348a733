"""pacer: adaptive rate-limited request client.

Routes outbound API calls through a single paced queue, backs off when the
server answers 429, caches and deduplicates reads, and keeps a durable
snapshot of the last good payloads for degraded-mode display.
"""

__version__ = "0.3.0"
