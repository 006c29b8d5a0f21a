"""Upload relay backend package."""
