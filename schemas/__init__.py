"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models used by the sync engine and its API:

Schemas:
    projections: Provider payload -> catalog row projections and edge extraction
    sync: Queue tasks, outbound requests and maintenance result types
    api: API endpoint response schemas

Usage:
    from schemas.projections import project, extract_edges
    from schemas.sync import SyncTask, PayloadFormat
    from schemas.api import HealthCheckResponse

Validation:
    Projections raise pydantic's ValidationError (a ValueError) for items
    that cannot be mapped; the response processor turns that into a
    MalformedItemError and keeps going with the rest of the batch.
"""
