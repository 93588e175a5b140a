"""
Context block schemas.

``ContextBlock`` is one role-tagged unit of text destined for a model call.
``BlockConfig`` is a story's saved customization of the block list and is
persisted with camelCase keys::

    {"customBlocks": [...], "overrides": {"instructions": {"contentMode": "append",
     "customContent": "Be brief."}}, "blockOrder": ["tools", "instructions"]}
"""
from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from storyloom.utils.ids import generate_block_id

BlockRole = Literal["system", "user"]
BlockSource = Literal["builtin", "custom"]
ContentMode = Literal["override", "prepend", "append"]
CustomBlockType = Literal["simple", "script"]


class ContextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: BlockRole
    content: str
    order: float
    source: BlockSource = "builtin"
    name: Optional[str] = None


class ContextMessage(BaseModel):
    role: BlockRole
    content: str


class BlockOverride(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: Optional[bool] = None
    content_mode: Optional[ContentMode] = Field(default=None, alias="contentMode")
    custom_content: Optional[str] = Field(default=None, alias="customContent")


class CustomBlockDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=generate_block_id, pattern=r"^cb-[a-z0-9-]{2,32}$")
    name: str = Field(..., max_length=100)
    role: BlockRole = "user"
    order: float = 0
    enabled: bool = True
    type: CustomBlockType = "simple"
    content: str = ""


class CustomBlockUpdate(BaseModel):
    """Partial update for a custom block; the id is immutable."""
    name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[BlockRole] = None
    order: Optional[float] = None
    enabled: Optional[bool] = None
    type: Optional[CustomBlockType] = None
    content: Optional[str] = None


class BlockConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    custom_blocks: List[CustomBlockDefinition] = Field(default_factory=list, alias="customBlocks")
    overrides: Dict[str, BlockOverride] = Field(default_factory=dict)
    block_order: List[str] = Field(default_factory=list, alias="blockOrder")

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
