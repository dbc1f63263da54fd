"""Built-in configuration defaults."""
