"""Domain dataclasses and API models."""
