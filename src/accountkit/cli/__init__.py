"""Command line interface for accountkit."""
