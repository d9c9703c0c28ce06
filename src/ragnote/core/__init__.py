"""Chat orchestration, model backends, and conversation state."""
