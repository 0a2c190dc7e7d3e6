"""Reporters - run timeline and reports."""
