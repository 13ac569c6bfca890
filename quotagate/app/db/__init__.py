"""Durable persistence of aggregated usage."""
