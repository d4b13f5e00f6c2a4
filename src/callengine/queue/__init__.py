"""Durable database-backed job queue and worker pool."""
