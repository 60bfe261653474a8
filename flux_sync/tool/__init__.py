"""Command line tools for flux-sync."""
