"""Audioshelf server package."""
