"""Core configuration, security, and database utilities."""
