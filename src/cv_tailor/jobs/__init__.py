"""Durable job queue and the worker that drains it."""
