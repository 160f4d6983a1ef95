"""
Data models.

- domain/: strict internal types used by the services
- api/: pydantic models that validate server payloads at the boundary
"""
