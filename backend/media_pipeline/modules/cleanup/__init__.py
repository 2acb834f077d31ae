"""Periodic reclamation of abandoned upload and processing storage."""
