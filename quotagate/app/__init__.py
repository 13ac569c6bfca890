"""Admission control and usage accounting for shared resources."""
