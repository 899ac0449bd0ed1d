"""
epcishub Setup Module

Provides ClickHouse schema deployment.
"""

__all__ = ["deploy_schema"]
