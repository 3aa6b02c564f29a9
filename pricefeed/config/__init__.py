"""
Retail Price Ingestion Service
Configuration Module
"""
from .settings import Settings, SourceConfig, get_settings

__all__ = ["Settings", "SourceConfig", "get_settings"]
