"""Built-in command modules."""
