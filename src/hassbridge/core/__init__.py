"""Core infrastructure shared by bridge modules."""
