"""Configuration loading for AI Usage Health."""
