"""Chapter Meetings API - live meeting runner for chapter gatherings."""

__version__ = "0.1.0"
