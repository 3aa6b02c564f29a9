"""
Serving Module

HTTP surface over the ingestion services.
"""
