"""Environment configuration helpers."""
