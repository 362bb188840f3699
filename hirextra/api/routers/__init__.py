"""
FastAPI routers for the ingestion service.

Each module holds one group of endpoints; ``hirextra.main`` registers them.
"""
