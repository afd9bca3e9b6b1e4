"""Domain services for the inventory consistency engine."""
