"""Command-line jobs for the dashboard core."""
