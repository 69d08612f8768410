from __future__ import annotations


class AnalyticsIngestError(Exception):
    """Base class for errors raised by the analytics ingestion service."""


class StorageError(AnalyticsIngestError):
    """A store operation failed after retries."""


class PipelineNotFoundError(AnalyticsIngestError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"unknown pipeline: {self.name}"
