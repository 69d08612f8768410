"""Analytics ingestion runner.

Modules:
- cli: CLI entry point (main)
"""
