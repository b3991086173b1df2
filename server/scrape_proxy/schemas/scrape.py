from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ScrapeMode(str, Enum):
    TEXT = "text"
    HTML = "html"


class ScrapeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Kept as a plain string: the URL validator must see exactly what the caller sent.
    url: str = Field(min_length=1, max_length=2048)
    mode: ScrapeMode = ScrapeMode.TEXT


class ScrapeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    final_url: str
    status_code: int
    content_type: Optional[str] = None
    title: Optional[str] = None
    mode: ScrapeMode
    content: str
    truncated: bool = False
