"""
LLM gateway integration for statement extraction and transaction classification.

This package contains:
- client: Chat-completions gateway client
- extract: Extraction service (statement rows to raw transactions)
- classify: Classifier service (transactions to category codes)
- prompts: System and user prompt builders
"""
