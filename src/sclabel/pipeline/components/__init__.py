"""Swappable pipeline components."""
