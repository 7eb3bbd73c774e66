"""Canonical domain records and collaborator protocols."""
