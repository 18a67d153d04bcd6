"""End-of-day market data pipeline for marketetl.

Retrieves vendor archives, stages their rows, bulk loads the raw tables and
rebuilds the transformed tables with imputed values and derived metrics.
"""
