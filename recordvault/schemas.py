"""
Validated option and criteria models accepted by the engine's public operations.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, List, Optional

KNOWN_OPERATORS = [
    'eq', 'ne', 'gt', 'gte', 'lt', 'lte',
    'contains', 'startsWith', 'endsWith',
    'in', 'notIn', 'between', 'exists',
]


class FilterCriterion(BaseModel):
    """A single predicate on a dot-path field. Unknown operators are allowed through."""
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    field: str
    operator: str
    value: Any = None
    case_sensitive: bool = Field(default=True, alias="caseSensitive")

    @field_validator('field')
    @classmethod
    def field_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('field cannot be empty')
        return v


class SortCriterion(BaseModel):
    field: str
    direction: str = "asc"

    @field_validator('direction')
    @classmethod
    def direction_must_be_valid(cls, v):
        if v not in ['asc', 'desc']:
            raise ValueError('direction must be one of: asc, desc')
        return v


class Pagination(BaseModel):
    page: int = 1
    limit: int = 50

    @field_validator('page', 'limit')
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError('page and limit must be >= 1')
        return v


class CleanupOptions(BaseModel):
    """Options controlling a cleanup run. Defaults are the safe choice: dry run with backup."""
    model_config = ConfigDict(populate_by_name=True)

    dry_run: bool = Field(default=True, alias="dryRun")
    create_backup: bool = Field(default=True, alias="createBackup")
    verify_before_delete: bool = Field(default=True, alias="verifyBeforeDelete")
    migrate_before_cleanup: bool = Field(default=True, alias="migrateBeforeCleanup")
    batch_size: int = Field(default=50, alias="batchSize")
    batch_pause: float = Field(default=0.1, alias="batchPause")
    backup_name: Optional[str] = Field(default=None, alias="backupName")

    @field_validator('batch_size')
    @classmethod
    def batch_size_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('batch_size must be >= 1')
        return v

    @field_validator('batch_pause')
    @classmethod
    def batch_pause_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('batch_pause must be >= 0')
        return v

    @field_validator('backup_name')
    @classmethod
    def backup_name_must_be_plain(cls, v):
        if v is not None and (not v.strip() or '/' in v or '\\' in v or '..' in v):
            raise ValueError('backup_name must be a plain directory name')
        return v


class SearchRequest(BaseModel):
    """Combined search across categories."""
    query: str
    categories: Optional[List[str]] = None
    filters: List[FilterCriterion] = []
    sort: List[SortCriterion] = []
    limit: int = 50
    offset: int = 0
    fuzzy: bool = False

    @field_validator('limit')
    @classmethod
    def limit_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('limit must be >= 1')
        return v

    @field_validator('offset')
    @classmethod
    def offset_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('offset must be >= 0')
        return v
