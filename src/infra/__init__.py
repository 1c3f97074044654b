"""Infrastructure: process supervision, signals, I/O."""
