"""Pluggable bridge modules."""
