"""Source-of-record connectors."""
