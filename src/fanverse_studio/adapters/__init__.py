"""Adapters: SQLAlchemy repositories and external HTTP/SDK clients."""
