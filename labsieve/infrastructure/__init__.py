"""Infrastructure layer for Lab-Sieve: configuration, settings and logging."""
