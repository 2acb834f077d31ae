"""Resumable chunked upload sessions."""
