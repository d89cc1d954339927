"""
Search and filter value types.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Posting:
    """One document's entry under an index term."""

    score: float = 0.0
    """Sum of field weights for every field the term appears in"""

    fields: List[str] = field(default_factory=list)
    """Flattened field paths containing the term, each listed once"""

    def to_dict(self) -> Dict[str, Any]:
        return {"score": round(self.score, 6), "fields": sorted(self.fields)}


@dataclass
class SearchHit:
    """A ranked match returned by a search index query."""

    id: str
    """Identifier of the matching document"""

    score: float
    """Combined exact and fuzzy score"""

    matched_fields: List[str] = field(default_factory=list)
    """Fields that contributed to the score"""

    category: Optional[str] = None
    """Category the document belongs to"""

    last_modified: Optional[str] = None
    """ISO timestamp of the document version that was indexed"""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "matched_fields": self.matched_fields,
            "category": self.category,
            "last_modified": self.last_modified,
        }


@dataclass
class IndexHealth:
    """Health verdict for one category's search index."""

    category: str
    status: str  # healthy|needs_rebuild|corrupted
    issues: List[str] = field(default_factory=list)
    indexed_documents: int = 0
    stored_documents: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "status": self.status,
            "issues": self.issues,
            "indexed_documents": self.indexed_documents,
            "stored_documents": self.stored_documents,
        }


@dataclass
class FilteredResults:
    """A page of filtered, sorted items plus paging metadata."""

    data: List[Any]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_previous: bool
    filter_stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_previous": self.has_previous,
            "filter_stats": self.filter_stats,
        }


@dataclass
class SearchResults:
    """A page of combined search results across categories."""

    results: List[Dict[str, Any]]
    """Each result is {id, category, data, score, matched_fields}"""

    total: int
    offset: int
    limit: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": self.results,
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "has_more": self.has_more,
        }
