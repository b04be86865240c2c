"""Adapters onto external execution layers."""
