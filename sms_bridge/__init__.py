"""Matrix <-> SMS bridge appservice."""
