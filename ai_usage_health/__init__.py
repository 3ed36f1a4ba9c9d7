"""
AI Usage Health.

Tracks developer-tool session telemetry per machine and turns it into usage
aggregates and an optimization health score.
"""

__version__ = "0.1.0"
