"""Invoice arithmetic and the invoice consistency engine."""
