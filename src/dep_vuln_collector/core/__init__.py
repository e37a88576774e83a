"""Domain model, ports, services and use cases (no I/O)."""
