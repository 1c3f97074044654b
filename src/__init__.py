"""warden: resilient runner for flaky external test processes."""

__version__ = "0.1.0"
__all__ = ["__version__"]
