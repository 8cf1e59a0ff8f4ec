"""
Configuration for the DocStore SDK.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_PAGE_SIZE = 50


class StoreSettings(BaseSettings):
    """Store connection configuration loaded from environment."""

    # Remote store
    project_id: str = Field(default="", description="Project owning the store")
    endpoint: str = Field(
        default="https://datastore.googleapis.com",
        description="Base URL of the REST API (or emulator)",
    )
    namespace: str | None = Field(default=None, description="Partition namespace for keys and queries")

    # Credentials (prefer a token provider in code for refreshable tokens)
    access_token: str | None = Field(default=None, description="Static bearer token")

    # Requests
    timeout: float = Field(default=30.0, description="Request timeout seconds")

    # Pagination defaults
    default_page_size: int = Field(default=DEFAULT_PAGE_SIZE, gt=0, description="Page size when a kind declares none")

    model_config = {"env_prefix": "DOCSTORE_"}
