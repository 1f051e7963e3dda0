"""Shared helpers: geo math, in-process caching and POI scoring."""
