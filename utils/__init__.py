"""One-shot maintenance scripts (run directly with python utils/<name>.py)."""
