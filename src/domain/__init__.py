"""Domain logic: validators, reports and project configuration."""
