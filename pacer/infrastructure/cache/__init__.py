"""Response Cache Implementation.

In-memory, TTL-bounded cache of decoded payloads keyed by request fingerprint.
Bounded Context: Cache Management
"""
