"""Chat transports."""
