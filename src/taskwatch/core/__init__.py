"""Ports, errors and application state."""
