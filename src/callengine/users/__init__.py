"""User call profiles (read-only source for the scheduler and dispatcher)."""
