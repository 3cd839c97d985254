"""Command-line interface for Careflow."""
