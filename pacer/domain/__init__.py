"""Domain Layer: value objects, interfaces (ports), events and errors.

Has no dependency on httpx, diskcache or any other infrastructure library.
"""
