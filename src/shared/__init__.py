"""Shared utilities used across the spark domain and pipelines."""
