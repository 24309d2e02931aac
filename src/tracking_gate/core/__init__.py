"""Configuration, error taxonomy and security primitives."""
