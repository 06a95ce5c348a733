"""Domain Event definitions.

Represents significant occurrences in a request's lifecycle that observers
(loggers, dashboards, subscribers of the client facade) might react to.
"""
