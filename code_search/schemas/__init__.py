"""Frozen pydantic records and configuration models."""
