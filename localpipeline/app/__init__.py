"""Application entry point, configuration and records."""
