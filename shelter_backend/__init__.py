"""Shelter listings, bounding-box search and booking admission."""
