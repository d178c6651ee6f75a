"""Application layer - services and workers orchestrating the domain."""
