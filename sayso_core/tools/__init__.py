"""Operational tools for Sayso Core."""
