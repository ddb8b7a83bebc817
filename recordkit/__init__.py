"""
Metadata-driven mapping, comparison and change auditing for object graphs.
"""
from .config import RecordKitSettings, configure_logging, get_settings

__all__ = ["RecordKitSettings", "configure_logging", "get_settings"]
