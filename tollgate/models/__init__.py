"""Pydantic models for billing state and operation results."""
