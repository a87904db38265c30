"""SQLAlchemy ORM models.

Models represent database tables:
- market_raw_snapshots: write-once audit of every provider call
- master_market_data: append-only canonical observations
- master_market_latest: latest-price projection
- market_offer_histogram_bins: replace-on-ingest order book bins
- market_jobs / market_job_runs / market_refresh_marks: priority queue state
- market_size_mappings: item -> provider variant resolution cache
"""

from market_data.models.raw_snapshot import RawSnapshot
from market_data.models.market_data import LatestMarketPrice, MarketDataRecord, OfferHistogramBin
from market_data.models.job import JobStatus, MarketJob, MarketJobRun, RefreshDebounceMark
from market_data.models.size_mapping import MappingStatus, SizeMapping

__all__ = [
    "JobStatus",
    "LatestMarketPrice",
    "MappingStatus",
    "MarketDataRecord",
    "MarketJob",
    "MarketJobRun",
    "OfferHistogramBin",
    "RawSnapshot",
    "RefreshDebounceMark",
    "SizeMapping",
]
