"""Utility functions for the signing kernel."""
