"""Call records, scheduling, dispatch and retry policy."""
