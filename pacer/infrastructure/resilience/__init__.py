"""API Resilience Implementations.

Contains the stats store, the adaptive delay controller and the request
scheduler that paces every outbound call.
Bounded Context: API Resilience
"""
