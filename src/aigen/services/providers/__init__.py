"""Concrete provider clients."""
