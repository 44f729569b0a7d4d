"""
Pydantic model schemas for API responses.
"""

from typing import Any
from pydantic import BaseModel, Field


class DatabaseMetadata(BaseModel):
    """Metadata section of the loaded MaxMind database."""

    binary_format_major_version: int = Field(
        ..., description="Major version of the MaxMind DB binary format"
    )
    binary_format_minor_version: int = Field(
        ..., description="Minor version of the MaxMind DB binary format"
    )
    build_epoch: int = Field(..., description="Unix time the database was built")
    database_type: str = Field(..., description="Database type, e.g. GeoLite2-City")
    description: dict[str, str] = Field(
        default_factory=dict, description="Description keyed by language code"
    )
    ip_version: int = Field(..., description="IP version of the search tree (4 or 6)")
    languages: list[str] = Field(
        default_factory=list, description="Locales present in the records"
    )
    node_count: int = Field(..., description="Number of nodes in the search tree")
    record_size: int = Field(..., description="Bit size of a search tree record")

    class Config:
        """Config for the DatabaseMetadata model."""

        json_schema_extra: dict[str, Any] = {
            "example": {
                "binary_format_major_version": 2,
                "binary_format_minor_version": 0,
                "build_epoch": 1741651200,
                "database_type": "GeoLite2-City",
                "description": {"en": "GeoLite2City database"},
                "ip_version": 6,
                "languages": ["de", "en", "es", "fr", "ja", "pt-BR", "ru", "zh-CN"],
                "node_count": 4112213,
                "record_size": 28,
            }
        }
