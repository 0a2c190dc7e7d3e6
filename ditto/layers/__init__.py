"""Layers - sense, action and record."""
