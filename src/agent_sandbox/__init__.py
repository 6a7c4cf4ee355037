"""Run AI coding agents inside a repository under file-level change control."""

__version__ = "0.1.0"
