"""Shortlist ranking collaborator.

Relevance scoring is pluggable: anything matching ``ShortlistRanker`` can be
handed to the context builder. The default keeps fragment order.
"""
from __future__ import annotations

from typing import Callable, List, Sequence

from storyloom.schemas.fragments import Fragment

# (category, candidates, author_input, limit) -> shortlist
ShortlistRanker = Callable[[str, Sequence[Fragment], str, int], List[Fragment]]


def keep_order_ranker(category: str, candidates: Sequence[Fragment], author_input: str, limit: int) -> List[Fragment]:
    return list(candidates[:limit])
