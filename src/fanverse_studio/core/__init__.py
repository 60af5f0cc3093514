"""Domain core: ORM models, repository interfaces, and business services."""
