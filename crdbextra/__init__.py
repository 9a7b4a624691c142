"""Declarative reconciliation of CockroachDB cluster objects."""

__version__ = "0.1.0"
