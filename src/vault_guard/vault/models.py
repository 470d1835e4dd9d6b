"""Vault client models for Vault Guard."""

from typing import List, Optional

from pydantic import BaseModel, Field


class FetchResult(BaseModel):
    """Current state of a vault resource."""

    exists: bool = Field(..., description="Whether the resource exists")
    content: Optional[str] = Field(None, description="Current content if it exists")
    path: Optional[str] = Field(None, description="Resolved vault path, when known")


class VaultResponse(BaseModel):
    """Outcome of executing an operation against the vault service."""

    success: bool = Field(..., description="Whether the service reported success")
    status_category: str = Field(..., description="2xx, 4xx, 5xx, network or other")
    status_code: Optional[int] = Field(None, description="HTTP status code")
    body: Optional[str] = Field(None, description="Response body text")
    error_message: Optional[str] = Field(None, description="Error description")


class VaultCommand(BaseModel):
    """A command registered in the vault application."""

    id: str
    name: str


class CommandList(BaseModel):
    """Response of the command listing endpoint."""

    commands: List[VaultCommand] = Field(default_factory=list)

    def describe(self, command_id: str) -> Optional[str]:
        for command in self.commands:
            if command.id == command_id:
                return command.name
        return None
