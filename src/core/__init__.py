"""Shared models and protocols."""
