"""Domain model for template scaffolding."""
