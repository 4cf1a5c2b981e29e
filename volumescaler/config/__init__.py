"""Controller configuration."""
