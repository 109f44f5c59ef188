"""
Base schemas with common functionality.
"""
from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Read/request schemas: built from ORM rows or populated by field name"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True
    )


class ChangesetSchema(BaseModel):
    """
    Base for the typed change-set records sent by the UI.

    Fields use the Marketplace's camelCase names as aliases so a change-set
    dumps straight into the shape the Marketplace API expects. Unknown fields
    are ignored: only modelled fields can ever be written upstream.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore"
    )
