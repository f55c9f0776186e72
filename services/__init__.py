"""
Service layer for business logic.

This package contains the batch worker, the parallel batch executor,
the classifier batch runner and the import service that orchestrates
extraction, categorization and reporting.
"""
