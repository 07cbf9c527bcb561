"""Ports for external collaborators."""
