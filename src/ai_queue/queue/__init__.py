"""Durable job queue, payload schemas and worker pool."""
