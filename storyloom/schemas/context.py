"""Per-request context build state. Recomputed for every generation, never persisted."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storyloom.schemas.fragments import Fragment, StoryMeta


class ContextBuildState(BaseModel):
    model_config = ConfigDict(frozen=True)

    story: StoryMeta
    branch_id: Optional[str] = None
    prose_fragments: List[Fragment] = Field(default_factory=list)
    chapter_markers: List[Fragment] = Field(default_factory=list)

    # Sticky fragments are always included, whatever the ranking says
    sticky_guidelines: List[Fragment] = Field(default_factory=list)
    sticky_knowledge: List[Fragment] = Field(default_factory=list)
    sticky_characters: List[Fragment] = Field(default_factory=list)

    guideline_shortlist: List[Fragment] = Field(default_factory=list)
    knowledge_shortlist: List[Fragment] = Field(default_factory=list)
    character_shortlist: List[Fragment] = Field(default_factory=list)

    author_input: str = ""

    def sticky_fragments(self) -> List[Fragment]:
        return [*self.sticky_guidelines, *self.sticky_knowledge, *self.sticky_characters]

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy handed to custom script blocks."""
        return self.model_dump(mode="json")
