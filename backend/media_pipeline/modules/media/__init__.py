"""Media items registered against completed uploads."""
