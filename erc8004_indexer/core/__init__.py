"""Ingestion pipeline components."""
