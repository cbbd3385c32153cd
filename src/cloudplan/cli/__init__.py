"""Command line interface for cloudplan."""
