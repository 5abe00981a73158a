"""
Typed payloads shared by the MCP tools and the account API.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

TEXT_FIELDS = ("background", "notes")
LIST_FIELDS = ("assumptions", "decisions", "open_items")


class ContextContent(BaseModel):
    """Recognized fields of a context document payload"""
    model_config = ConfigDict(extra="forbid")

    background: Optional[str] = Field(None, description="Free-text project background")
    assumptions: Optional[List[str]] = Field(None, description="Working assumptions")
    decisions: Optional[List[str]] = Field(None, description="Decisions already made")
    open_items: Optional[List[str]] = Field(None, description="Open questions and follow-ups")
    notes: Optional[str] = Field(None, description="Free-text notes")

    def provided_fields(self) -> dict:
        """Fields the caller actually sent with a value"""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class SignupRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str
