"""Pydantic data models for Artive."""
