"""Command handlers for the tracksync CLI."""
