"""HTTP surface: health/readiness/metrics plus cursor inspection."""
