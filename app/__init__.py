"""
HTTP layer: FastAPI routes for import jobs.
"""
