"""HTTP API layer: thin FastAPI routes and Pydantic schemas."""
