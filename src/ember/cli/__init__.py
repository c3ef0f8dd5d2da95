"""Command-line interface for Ember."""
