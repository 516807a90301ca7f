"""Shared helpers for Artive."""
