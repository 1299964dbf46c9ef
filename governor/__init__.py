"""Client-side request governor: per-endpoint rate limiting and backoff."""
