"""
One-tick workers for the price reducer.

Each module runs a single pass and exits; the cadence comes from an external
scheduler (cron, Railway cron, systemd timer):

- price_reduction_worker: one reduction cycle over every due listing
- listing_sync_worker: reconciles every connected account whose last sync is stale
- token_refresh_worker: refreshes access tokens that expire soon
- market_analysis_worker: refreshes comparable-price signals for market-based listings

Run with ``python -m price_reducer.workers.<name>``.
"""
