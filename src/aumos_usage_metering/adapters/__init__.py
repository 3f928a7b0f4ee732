"""Adapters: SQLAlchemy repositories, billing provider client, publishers."""
