"""Upstream feed access and record normalization."""
