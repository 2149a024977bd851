"""Pydantic models for Salesforce wire payloads

This module provides validation models for OAuth token responses, REST error
lists, PushTopic records and SObject create results.
"""

from pydantic import BaseModel, ConfigDict, Field


class LoginToken(BaseModel):
    """OAuth password-grant success payload"""

    access_token: str = Field(..., min_length=1, description="Access token")
    instance_url: str = Field(..., min_length=1, description="Instance URL")
    id: str | None = Field(None, description="Identity URL")
    token_type: str | None = Field(None, description="Token type")
    issued_at: str | None = Field(None, description="Issue timestamp (ms)")
    signature: str | None = Field(None, description="Payload signature")

    def __repr__(self) -> str:
        return f"LoginToken(instance_url={self.instance_url!r})"


class LoginError(BaseModel):
    """OAuth error payload"""

    error: str = Field(..., description="OAuth error code")
    error_description: str = Field("", description="Error description")


class RestError(BaseModel):
    """Single entry of a REST API error list"""

    model_config = ConfigDict(populate_by_name=True)

    error_code: str | None = Field(None, alias="errorCode")
    message: str = Field("", description="Error message")
    field_names: list[str] = Field(default_factory=list, alias="fields")

    def __str__(self) -> str:
        text = f'{{ code: {self.error_code}, description: "{self.message}"'
        if self.field_names:
            text += ", fields: [" + ", ".join(self.field_names) + "]"
        return text + " }"


class PushTopic(BaseModel):
    """PushTopic SObject"""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = Field(None, alias="Id")
    name: str | None = Field(None, alias="Name")
    query: str | None = Field(None, alias="Query")
    api_version: float | None = Field(None, alias="ApiVersion")
    is_active: bool | None = Field(None, alias="IsActive")
    notify_for_fields: str | None = Field(None, alias="NotifyForFields")
    notify_for_operations: str | None = Field(
        None, alias="NotifyForOperations"
    )
    description: str | None = Field(None, alias="Description")


class QueryRecordsPushTopic(BaseModel):
    """SOQL query result over PushTopic"""

    model_config = ConfigDict(populate_by_name=True)

    total_size: int = Field(0, alias="totalSize", ge=0)
    done: bool = True
    next_records_url: str | None = Field(None, alias="nextRecordsUrl")
    records: list[PushTopic] = Field(default_factory=list)


class CreateSObjectResult(BaseModel):
    """Result of an SObject create call"""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    success: bool = False
    errors: list[RestError] = Field(default_factory=list)
