"""Core Application Layer: the client facade and caller-side services.

Connects the domain layer with the infrastructure layer through interfaces.
"""
