"""Declarative terminal layout engine with setup pipelines."""

__version__ = "0.1.0"
