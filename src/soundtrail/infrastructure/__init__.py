"""Infrastructure layer: persistence, HTTP integrations, cache and observability."""
