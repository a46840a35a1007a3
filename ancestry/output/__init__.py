"""Console and JSON report output."""
