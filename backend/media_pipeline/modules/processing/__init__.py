"""Asynchronous processing of completed uploads."""
