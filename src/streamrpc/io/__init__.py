"""I/O layer: wire transport."""
