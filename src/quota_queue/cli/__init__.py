"""Command-line interface for quota-queue."""
