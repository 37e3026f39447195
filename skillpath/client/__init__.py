"""Python client for the assessment chat endpoints."""
