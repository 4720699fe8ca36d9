"""Configuration, secrets, and config-watching services."""
