"""External Metrics Service."""
