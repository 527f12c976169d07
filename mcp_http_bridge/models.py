"""Response models for the gateway's OpenAPI document."""

from typing import Any, Dict

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(..., examples=["ok"])
    timestamp: str = Field(..., description="ISO-8601 time of the check")
    connection: str = Field(..., description="State of the MCP server connection")


class ToolCallResponse(BaseModel):
    toolName: str
    result: Any = Field(None, description="Tool result exactly as returned by the MCP server")


class ErrorResponse(BaseModel):
    error: str


class ServiceDescriptor(BaseModel):
    name: str
    version: str
    endpoints: Dict[str, str]
