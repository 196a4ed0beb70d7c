"""
Harvest - catalog import and storage migration for the Spotfly streaming app.

Harvest pulls open-licensed tracks from third-party content APIs, normalizes
them into the canonical track schema read by the mobile client, relocates
their media into the app's own object storage, and writes them into the
catalog store in bounded atomic batches.
"""

__version__ = "0.1.0"
__author__ = "Spotfly Contributors"

from harvest.core.models import ImportStats, SourceResult, TrackRecord

__all__ = ["ImportStats", "SourceResult", "TrackRecord", "__version__"]
