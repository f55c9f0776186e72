"""
Core modules of the bank statement import pipeline.

This package contains:
- assembler: Merging of per-batch results in global order
- batching: Splitting of statement content into row batches
- cascade: Deterministic categorization stages
- catalog: Loading of categories, user rules and cascade rule data
- checkpoint: Storage of paused runs
- config: Application configuration and settings
- db: Database access layer
- exceptions: Custom exception classes
- exporters: Excel export functionality
- logger: Logging configuration
- normalize: Amount, date and transaction normalization
- parsing: Statement file reading
- retry: Retry policy for external calls
- schema: Pydantic models for data validation
"""
