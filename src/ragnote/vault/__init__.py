"""Vector table management and retrieval over the notes vault."""
