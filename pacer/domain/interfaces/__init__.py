"""Domain Interfaces (Ports):

Defines the contracts (Abstract Base Classes) that infrastructure components
must implement. The client facade depends on these interfaces, not
concrete implementations.
"""
