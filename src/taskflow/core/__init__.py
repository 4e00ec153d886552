"""Ports, clock and shared application state."""
