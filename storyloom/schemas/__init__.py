# Story and fragment schemas
from .fragments import (
    StorySettings,
    StoryMeta,
    Fragment,
    FragmentCreate,
    FragmentPlacement,
    SUPPORTING_TYPES,
)

# Timeline: branches index and chain entries
from .timeline import (
    DEFAULT_BRANCH_ID,
    BranchMeta,
    BranchesIndex,
    ChainEntry,
    ChapterBoundary,
)

# Context assembly
from .context import ContextBuildState
from .blocks import (
    ContextBlock,
    ContextMessage,
    BlockOverride,
    CustomBlockDefinition,
    CustomBlockUpdate,
    BlockConfig,
)

# Agents
from .agents import (
    AgentRunResult,
    LibrarianAnalysis,
    ChapterSummary,
    LibrarianRuntimeStatus,
)

__all__ = [
    "StorySettings",
    "StoryMeta",
    "Fragment",
    "FragmentCreate",
    "FragmentPlacement",
    "SUPPORTING_TYPES",
    "DEFAULT_BRANCH_ID",
    "BranchMeta",
    "BranchesIndex",
    "ChainEntry",
    "ChapterBoundary",
    "ContextBuildState",
    "ContextBlock",
    "ContextMessage",
    "BlockOverride",
    "CustomBlockDefinition",
    "CustomBlockUpdate",
    "BlockConfig",
    "AgentRunResult",
    "LibrarianAnalysis",
    "ChapterSummary",
    "LibrarianRuntimeStatus",
]
