"""Cross-cutting engine concerns: exceptions and logging."""
