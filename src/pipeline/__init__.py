"""Retry pipeline for supervised runs."""
