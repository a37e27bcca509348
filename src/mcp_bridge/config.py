"""Configuration for the MCP bridge."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional, Set

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    service_name: str = Field(default="mcp-bridge")

    mcp_server_version: str = Field(default="1.0.0")
    mcp_route_prefix: str = Field(default="/mcp")
    mcp_include_input_schemas: bool = Field(default=True)

    mcp_forward_headers: Optional[str] = Field(default="Authorization")
    mcp_correlation_id_header: str = Field(default="X-Correlation-ID")

    mcp_tool_allowlist: Optional[str] = Field(default=None)
    mcp_property_naming: str = Field(default="camel")

    mcp_enable_otel_enrichment: bool = Field(default=False)
    mcp_log_level: str = Field(default="INFO")

    def tool_allowlist(self) -> Set[str]:
        if not self.mcp_tool_allowlist:
            return set()
        return {
            item.strip().lower()
            for item in self.mcp_tool_allowlist.split(",")
            if item.strip()
        }

    def forward_headers(self) -> List[str]:
        if not self.mcp_forward_headers:
            return []
        headers: List[str] = []
        for item in self.mcp_forward_headers.split(","):
            name = item.strip()
            if name and name.lower() not in {h.lower() for h in headers}:
                headers.append(name)
        return headers

    def route_prefix(self) -> str:
        prefix = "/" + self.mcp_route_prefix.strip().strip("/")
        return prefix if prefix != "/" else "/mcp"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
