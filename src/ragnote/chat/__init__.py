"""Terminal chat interface."""
