from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field


class RemoteToolServer(BaseModel):
    """Configured remote tool server"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: Literal["hosted", "http", "stdio"] = "hosted"
    url: Optional[str] = None
    server_label: Optional[str] = Field(None, alias="serverLabel")
    server_url: Optional[str] = Field(None, alias="serverUrl")

    @property
    def label(self) -> str:
        return self.server_label or self.name

    @property
    def endpoint(self) -> Optional[str]:
        return self.server_url or self.url


class ToolSpec(BaseModel):
    """A callable tool exposed by a remote server"""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    server_label: Optional[str] = None
