"""Business services for the market data pipeline."""
