"""Tool definitions and executors exposed to the model."""
