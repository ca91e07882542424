"""PayVAT utilities."""
