"""Admission control services."""
