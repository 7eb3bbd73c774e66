"""Persistence: engine/session management, ORM models and the Persistence Gateway."""
