"""Local microservice manager.

Supervises a single containerized service instance on a developer machine,
keeps a shared name -> URL registry of running services, and ships a
self-updating wrapper that keeps every checkout on the latest manager.
"""

__version__ = "2024.50.123456"
