"""Command line tool for driftless."""
