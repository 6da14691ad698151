"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Trips first - documents, cache links and review tasks reference trips_trip
from farecheck.modules.trips.models import Trip  # noqa: F401

from farecheck.modules.analysis.models import ReanalysisSession  # noqa: F401
from farecheck.modules.cache.models import CacheEntry, CacheEntryTrip  # noqa: F401
from farecheck.modules.review.models import ReviewTask  # noqa: F401
from farecheck.modules.uploads.models import DuplicateBlockRecord, UploadedDocument  # noqa: F401
