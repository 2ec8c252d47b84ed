"""Tailoring generations: payload, pipeline handler, storage and enqueue service."""
