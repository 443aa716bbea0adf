"""
Pydantic request bodies for the HTTP API.

Field aliases keep the camelCase / snake_case mix the Alloy API and the
browser frontend already use on the wire.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitiateRequest(_Body):
    connector_id: Optional[str] = Field(None, alias="connectorId")
    redirect_uri: Optional[str] = Field(None, alias="redirectUri")


class CallbackRequest(_Body):
    code: Optional[str] = None
    state: Optional[str] = None
    connector_id: Optional[str] = Field(None, alias="connectorId")
    credential_id: Optional[str] = Field(None, alias="credentialId")
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class ApiKeyConnectionRequest(_Body):
    connector_id: Optional[str] = Field(None, alias="connectorId")
    api_key: Optional[str] = Field(None, alias="apiKey")


class RegisterRedirectRequest(_Body):
    connector_id: str = Field("notion", alias="connectorId")
    redirect_uri: Optional[str] = Field(None, alias="redirectUri")
