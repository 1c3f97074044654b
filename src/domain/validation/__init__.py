"""Validation domain: validator units, report aggregation, warden.yaml."""
