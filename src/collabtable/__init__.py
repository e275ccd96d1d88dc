"""Collaborative table sync: server merge engine and client replica."""

__version__ = "0.1.0"
