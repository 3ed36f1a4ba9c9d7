"""
Core modules for AI Usage Health.

This package contains the core functionality for session ingestion,
usage aggregation, health scoring and insight generation.
"""
