"""Asynchronous analysis job pipeline for the content-repurposing backend."""

__version__ = "0.1.0"
