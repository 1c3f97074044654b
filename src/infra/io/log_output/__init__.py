"""Console output and debug log files."""
