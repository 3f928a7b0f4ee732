"""Core domain: pricing, ORM models, services, and the reconciler."""
