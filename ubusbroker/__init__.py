"""Micro bus message broker: objects, method calls, events and ACLs over a Unix socket."""

__version__ = "0.1.0"