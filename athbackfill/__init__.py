"""Historical ATH, drawdown and milestone backfill for recorded token calls."""
