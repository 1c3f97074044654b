"""Orchestration: validator scheduling, the stable test runner and wiring."""
