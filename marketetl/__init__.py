"""marketetl - bulk market-data ingestion and transformation pipeline.

Retrieves historical OHLCV archives from a shared folder, loads them into a
relational time-series store and derives feature-enriched daily records.
"""

__version__ = "0.1.0"
