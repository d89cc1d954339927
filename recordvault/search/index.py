"""
Inverted term index over record store categories.

Each category has its own index mapping term -> {document_id: Posting}. The index is a
derived view: it can always be rebuilt from the store, and the persisted form under
indexes/search/<category>.json is canonical JSON so a rebuild over unchanged files
produces byte-identical output.
"""

import asyncio
import json
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from rapidfuzz.distance import Levenshtein

from .types import IndexHealth, Posting, SearchHit
from ..core.config import DEFAULT_FIELD_WEIGHTS
from ..core.errors import StoreError
from ..core.store import RecordStore, write_atomic
from ..util.logging import StructuredLogger, get_logger

INDEX_FORMAT_VERSION = 1
MAX_FUZZY_DISTANCE = 2
MIN_TERM_LENGTH = 2

STOP_WORDS = frozenset([
    'the', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'by',
    'from', 'up', 'about', 'into', 'through', 'during', 'before', 'after', 'above',
    'below', 'between', 'among', 'this', 'that', 'these', 'those', 'is', 'are', 'was',
    'were', 'been', 'be', 'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would',
    'could', 'should', 'may', 'might', 'must', 'can', 'shall', 'an', 'as', 'it', 'its',
])

_TOKEN_SPLIT = re.compile(r"[^0-9a-z]+")


def tokenize(text: str) -> List[str]:
    """Lower-case, split on non-alphanumerics, drop stop words and short tokens."""
    return [
        token for token in _TOKEN_SPLIT.split(text.lower())
        if len(token) >= MIN_TERM_LENGTH and token not in STOP_WORDS
    ]


def flatten_content(content: Any, prefix: str = "") -> Dict[str, str]:
    """
    Flatten a document into {dotted.field.path: text}.

    Lists of scalars are joined with spaces, lists of objects are flattened with the
    list's path, booleans and None are skipped, other scalars are stringified.
    """
    flat: Dict[str, str] = {}

    def add(path: str, text: str):
        if not text:
            return
        flat[path] = f"{flat[path]} {text}" if path in flat else text

    def walk(value: Any, path: str):
        if isinstance(value, dict):
            for key, child in value.items():
                walk(child, f"{path}.{key}" if path else str(key))
        elif isinstance(value, list):
            scalars = []
            for item in value:
                if isinstance(item, (dict, list)):
                    walk(item, path)
                elif item is not None and not isinstance(item, bool):
                    scalars.append(str(item))
            add(path or "value", " ".join(scalars))
        elif value is None or isinstance(value, bool):
            return
        else:
            add(path or "value", str(value))

    walk(content, prefix)
    return flat


def _timestamp(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return 0.0


class SearchIndex:
    """Per-category inverted index with weighted fields and fuzzy lookup."""

    def __init__(self, store: RecordStore, field_weights: Dict[str, float] = None,
                 logger: StructuredLogger = None):
        self.store = store
        self.field_weights = dict(DEFAULT_FIELD_WEIGHTS if field_weights is None else field_weights)
        self.logger = logger or get_logger("search")
        self.index_path = store.root / "indexes" / "search"
        self._terms: Dict[str, Dict[str, Dict[str, Posting]]] = {}  # category -> term -> doc -> posting
        self._documents: Dict[str, Dict[str, Dict[str, Any]]] = {}  # category -> doc -> {terms, last_modified, checksum}
        self._last_rebuild: Dict[str, str] = {}
        # Guards _terms and _documents; the heartbeat thread reads them during health checks
        self._lock = threading.RLock()

    def field_weight(self, field_path: str) -> float:
        if field_path in self.field_weights:
            return self.field_weights[field_path]
        return self.field_weights.get(field_path.rsplit(".", 1)[-1], 1.0)

    def categories(self) -> List[str]:
        with self._lock:
            return sorted(set(self._terms) | set(self._documents))

    def indexed_ids(self, category: str) -> Set[str]:
        with self._lock:
            return set(self._documents.get(category, {}))

    # Mutation

    def index(self, category: str, record_id: str, content: Any, last_modified: datetime = None,
              checksum: str = None):
        """
        Index a document, replacing any earlier version of it.

        checksum identifies the stored bytes that were indexed, so health() can tell when
        the document was rewritten without going through the index.
        """
        flat = flatten_content(content)

        with self._lock:
            self.remove(category, record_id)

            terms = self._terms.setdefault(category, {})
            seen_terms: Set[str] = set()

            for field_path, text in flat.items():
                weight = self.field_weight(field_path)
                for term in set(tokenize(text)):
                    posting = terms.setdefault(term, {}).setdefault(record_id, Posting())
                    if field_path not in posting.fields:
                        posting.fields.append(field_path)
                        posting.score += weight
                    seen_terms.add(term)

            self._documents.setdefault(category, {})[record_id] = {
                "terms": seen_terms,
                "last_modified": last_modified.isoformat() if last_modified else None,
                "checksum": checksum,
            }

    def remove(self, category: str, record_id: str) -> bool:
        """Drop every posting of a document. Returns False when it was not indexed."""
        with self._lock:
            document = self._documents.get(category, {}).pop(record_id, None)
            if document is None:
                return False

            terms = self._terms.get(category, {})
            for term in document["terms"]:
                postings = terms.get(term)
                if postings is None:
                    continue
                postings.pop(record_id, None)
                if not postings:
                    del terms[term]
            return True

    def clear(self, category: str):
        with self._lock:
            self._terms.pop(category, None)
            self._documents.pop(category, None)

    # Queries

    def _fuzzy_terms(self, category: str, token: str) -> Iterable[Tuple[str, float]]:
        for term in self._terms.get(category, {}):
            if term == token or abs(len(term) - len(token)) > MAX_FUZZY_DISTANCE:
                continue
            distance = Levenshtein.distance(token, term, score_cutoff=MAX_FUZZY_DISTANCE)
            if distance <= MAX_FUZZY_DISTANCE:
                yield term, 1 - distance / max(len(term), len(token))

    def search(self, category: str, text: str, fuzzy: bool = False, limit: int = 50) -> List[SearchHit]:
        """Return ranked hits for free text within one category."""
        scores: Dict[str, float] = {}
        fields: Dict[str, Set[str]] = {}

        with self._lock:
            terms = self._terms.get(category, {})
            modified = {
                record_id: info["last_modified"]
                for record_id, info in self._documents.get(category, {}).items()
            }

            for token in set(tokenize(text)):
                matches = []
                if token in terms:
                    matches.append((token, 1.0))
                if fuzzy:
                    matches.extend(self._fuzzy_terms(category, token))

                for term, similarity in matches:
                    for record_id, posting in terms[term].items():
                        scores[record_id] = scores.get(record_id, 0.0) + posting.score * similarity
                        fields.setdefault(record_id, set()).update(posting.fields)

        ranked = sorted(
            scores.items(),
            key=lambda item: (-item[1], -_timestamp(modified.get(item[0])), item[0]),
        )

        hits = []
        for record_id, score in ranked[:limit] if limit else ranked:
            hits.append(SearchHit(
                id=record_id,
                score=round(score, 6),
                matched_fields=sorted(fields.get(record_id, ())),
                category=category,
                last_modified=modified.get(record_id),
            ))
        return hits

    def query(self, category: str, text: str, fuzzy: bool = False, limit: int = 50) -> List[str]:
        """Return ranked document ids for free text within one category."""
        return [hit.id for hit in self.search(category, text, fuzzy=fuzzy, limit=limit)]

    # Persistence

    def index_file(self, category: str) -> Path:
        return self.index_path / f"{category}.json"

    def serialize(self, category: str) -> bytes:
        """Canonical JSON form of a category index."""
        with self._lock:
            payload = {
                "version": INDEX_FORMAT_VERSION,
                "category": category,
                "documents": {
                    record_id: {
                        "lastModified": info["last_modified"],
                        "checksum": info.get("checksum"),
                        "terms": sorted(info["terms"]),
                    }
                    for record_id, info in self._documents.get(category, {}).items()
                },
                "terms": {
                    term: {record_id: posting.to_dict() for record_id, posting in postings.items()}
                    for term, postings in self._terms.get(category, {}).items()
                },
            }
        return json.dumps(payload, sort_keys=True, indent=1, ensure_ascii=False).encode("utf-8")

    def save(self, category: str) -> Path:
        self.index_path.mkdir(parents=True, exist_ok=True)
        target = self.index_file(category)
        write_atomic(target, self.serialize(category))
        return target

    def load(self, category: str) -> bool:
        """Load a persisted index. Returns False when none exists; raises StoreError if corrupt."""
        target = self.index_file(category)
        if not target.exists():
            return False

        try:
            payload = json.loads(target.read_text(encoding="utf-8"))
            documents = {
                record_id: {
                    "terms": set(info["terms"]),
                    "last_modified": info.get("lastModified"),
                    "checksum": info.get("checksum"),
                }
                for record_id, info in payload["documents"].items()
            }
            terms = {
                term: {
                    record_id: Posting(score=entry["score"], fields=list(entry["fields"]))
                    for record_id, entry in postings.items()
                }
                for term, postings in payload["terms"].items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise StoreError(f"Search index for {category} is corrupted: {e}")

        with self._lock:
            self._documents[category] = documents
            self._terms[category] = terms
        return True

    async def rebuild(self, category: str) -> int:
        """Re-derive a category index from the store and persist it. Returns documents indexed."""
        with self._lock:
            self._terms[category] = {}
            self._documents[category] = {}
        skipped = 0

        async for record_id in self.store.list_ids(category):
            try:
                record = await self.store.stat(category, record_id)
            except StoreError as e:
                skipped += 1
                self.logger.warning(f"Skipping unreadable document {category}/{record_id}: {e}")
                continue
            self.index(category, record_id, record.content, last_modified=record.last_modified,
                       checksum=record.checksum)

        await asyncio.to_thread(self.save, category)
        self._last_rebuild[category] = self.store.clock().isoformat()

        count = len(self.indexed_ids(category))
        self.logger.log_index_operation("rebuild", category, {"documents": count, "skipped": skipped})
        return count

    def optimize(self, category: str) -> int:
        """
        Compact a category index.

        Postings whose document is no longer indexed and terms left without postings are
        dropped. Returns the number of entries removed.
        """
        removed = 0

        with self._lock:
            documents = self._documents.get(category, {})
            terms = self._terms.get(category, {})

            for term in list(terms):
                postings = terms[term]
                for record_id in [r for r in postings if r not in documents]:
                    del postings[record_id]
                    removed += 1
                if not postings:
                    del terms[term]
                    removed += 1
            term_count = len(terms)

        self.save(category)
        self.logger.log_index_operation("optimize", category, {"removed": removed, "terms": term_count})
        return removed

    # Introspection

    def stats(self) -> Dict[str, Any]:
        stats = {
            "total_terms": 0,
            "categories": {},
        }
        with self._lock:
            for category in self.categories():
                term_count = len(self._terms.get(category, {}))
                document_count = len(self._documents.get(category, {}))
                postings = sum(len(p) for p in self._terms.get(category, {}).values())
                stats["total_terms"] += term_count
                stats["categories"][category] = {
                    "terms": term_count,
                    "documents": document_count,
                    "postings": postings,
                    "average_terms_per_document": round(postings / document_count, 2) if document_count else 0,
                    "last_rebuild": self._last_rebuild.get(category),
                }
        return stats

    def health(self, category: str, stored: Iterable[str]) -> IndexHealth:
        """
        Compare the indexed documents of a category with what the store holds.

        stored is either an iterable of ids or a mapping of id -> checksum of the bytes on
        disk. With checksums, a document rewritten without going through the index is
        reported as out of date.
        """
        checksums = dict(stored) if isinstance(stored, Mapping) else {}
        stored_ids = set(checksums) if isinstance(stored, Mapping) else set(stored)
        issues = []
        status = "healthy"

        with self._lock:
            documents = self._documents.get(category, {})
            terms = self._terms.get(category, {})
            indexed = set(documents)

            for record_id, info in documents.items():
                for term in info["terms"]:
                    if record_id not in terms.get(term, {}):
                        issues.append(f"Document {record_id} references missing term '{term}'")
                        status = "corrupted"
                        break

            outdated = [
                record_id for record_id, checksum in checksums.items()
                if record_id in documents
                and documents[record_id].get("checksum") is not None
                and documents[record_id]["checksum"] != checksum
            ]

        missing = stored_ids - indexed
        extra = indexed - stored_ids
        if missing:
            issues.append(f"{len(missing)} stored documents are not indexed")
        if extra:
            issues.append(f"{len(extra)} indexed documents no longer exist")
        if outdated:
            issues.append(f"{len(outdated)} indexed documents changed on disk since indexing")
        if stored_ids and not indexed:
            issues.append("Index is empty")
        if (missing or extra or outdated) and status == "healthy":
            status = "needs_rebuild"

        return IndexHealth(
            category=category,
            status=status,
            issues=issues,
            indexed_documents=len(indexed),
            stored_documents=len(stored_ids),
        )
