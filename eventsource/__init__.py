"""Event sourcing primitives: events, aggregates, serializers, stores, a repository and resource reservations."""

__version__ = "0.1.0"