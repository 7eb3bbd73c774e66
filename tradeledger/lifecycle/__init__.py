"""Lifecycle aggregation and validation."""
