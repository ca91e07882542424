"""Test fixtures: mock external services."""
