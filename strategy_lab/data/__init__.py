"""
Market data contracts and loaders.

Defines the MarketBar/AssetSeries schema with its ordering rules, and loads
series from pandas frames, record lists, or canonical OHLCV CSVs.
"""
