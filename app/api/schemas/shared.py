"""
Typed configuration and wire models for the lead import pipeline.

Job configuration is stored as JSON on ``import_jobs`` but is always parsed
through these models once, at the boundary, before the core touches it.
Wire formats (queue messages, progress) use camelCase aliases.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# Lead columns a file column can be mapped onto.
LEAD_FIELDS = (
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "status",
    "source",
    "notes",
    "assigned_to",
)

# At least one of these must be mapped before an import can start.
CONTACT_FIELDS = ("email", "phone", "external_id")

# Duplicate key priority: first non-empty key wins.
DUPLICATE_KEY_FIELDS = ("external_id", "email", "phone")

DuplicateKeyField = Literal["external_id", "email", "phone"]


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, serializes camelCase by alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------


class MappingAlternative(CamelModel):
    field: str
    confidence: float = Field(ge=0.0, le=1.0)


class ColumnMapping(CamelModel):
    source_column: str
    source_index: int = Field(ge=0)
    target_field: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_manual: bool = False
    sample_values: List[str] = Field(default_factory=list)
    alternatives: List[MappingAlternative] = Field(default_factory=list)

    @field_validator("target_field")
    @classmethod
    def validate_target_field(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, ""):
            return None
        if value not in LEAD_FIELDS:
            raise ValueError(f"Unknown lead field '{value}'")
        return value


class ColumnMappingConfig(CamelModel):
    mappings: List[ColumnMapping]

    @model_validator(mode="after")
    def validate_unique_targets(self) -> "ColumnMappingConfig":
        seen: Dict[str, str] = {}
        for mapping in self.mappings:
            if not mapping.target_field:
                continue
            if mapping.target_field in seen:
                raise ValueError(
                    f"Field '{mapping.target_field}' is mapped by both "
                    f"'{seen[mapping.target_field]}' and '{mapping.source_column}'"
                )
            seen[mapping.target_field] = mapping.source_column
        return self

    @property
    def mapped_fields(self) -> List[str]:
        return [m.target_field for m in self.mappings if m.target_field]

    @property
    def has_contact_field(self) -> bool:
        return any(field in CONTACT_FIELDS for field in self.mapped_fields)


class RequiredMappingCheck(CamelModel):
    has_contact_field: bool
    missing_contact_fields: List[str] = Field(default_factory=list)
    missing_recommended_fields: List[str] = Field(default_factory=list)


class MappingSummary(CamelModel):
    total_columns: int
    mapped_columns: int
    unmapped_columns: int
    high_confidence: int
    low_confidence: int
    manual_overrides: int


# ---------------------------------------------------------------------------
# Assignment / duplicate options
# ---------------------------------------------------------------------------


class NoAssignment(CamelModel):
    mode: Literal["none"] = "none"


class RoundRobinAssignment(CamelModel):
    mode: Literal["round_robin"]
    round_robin_user_ids: List[str] = Field(min_length=1)


class ByColumnAssignment(CamelModel):
    mode: Literal["by_column"]
    # Raw source column to read; defaults to the column mapped onto assigned_to.
    assignment_column: Optional[str] = None


AssignmentConfig = Annotated[
    Union[NoAssignment, RoundRobinAssignment, ByColumnAssignment],
    Field(discriminator="mode"),
]

_assignment_adapter = TypeAdapter(AssignmentConfig)


class DuplicateConfig(CamelModel):
    strategy: Literal["skip", "update", "create"] = "skip"
    check_fields: List[DuplicateKeyField] = Field(default_factory=lambda: ["email"])
    check_database: bool = True
    check_within_file: bool = True

    @field_validator("check_fields")
    @classmethod
    def order_check_fields(cls, value: List[str]) -> List[str]:
        """Deduplicate and order by key priority."""
        return [field for field in DUPLICATE_KEY_FIELDS if field in set(value)]


class ImportOptions(CamelModel):
    """Options applied at commit time; defaults mirror an unconfigured job."""

    assignment: AssignmentConfig = Field(default_factory=NoAssignment)
    duplicates: DuplicateConfig = Field(default_factory=DuplicateConfig)
    default_status: Optional[str] = None
    default_source: Optional[str] = None


def parse_assignment_config(data: Optional[Dict[str, Any]]):
    """Validate a stored assignment blob; ``None`` means no assignment."""
    if not data:
        return NoAssignment()
    return _assignment_adapter.validate_python(data)


def parse_duplicate_config(data: Optional[Dict[str, Any]]) -> DuplicateConfig:
    if not data:
        return DuplicateConfig()
    return DuplicateConfig.model_validate(data)


def parse_column_mapping(data: Any) -> ColumnMappingConfig:
    """Accept either a bare list of mappings or ``{"mappings": [...]}``."""
    if isinstance(data, list):
        data = {"mappings": data}
    return ColumnMappingConfig.model_validate(data)


# ---------------------------------------------------------------------------
# Queue messages
# ---------------------------------------------------------------------------


class ParseJobMessage(CamelModel):
    import_job_id: str


class CommitJobMessage(CamelModel):
    import_job_id: str
    assignment_config: AssignmentConfig = Field(default_factory=NoAssignment)
    duplicate_config: DuplicateConfig = Field(default_factory=DuplicateConfig)
    default_status: Optional[str] = None
    default_source: Optional[str] = None

    def to_options(self) -> ImportOptions:
        return ImportOptions(
            assignment=self.assignment_config,
            duplicates=self.duplicate_config,
            default_status=self.default_status,
            default_source=self.default_source,
        )


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class ImportProgress(CamelModel):
    status: str
    total_rows: Optional[int] = None
    processed_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    imported_rows: int = 0
    skipped_rows: int = 0
    current_chunk: int = 0
    total_chunks: Optional[int] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None


class CreateImportRequest(CamelModel):
    file_name: str
    file_size: Optional[int] = Field(default=None, ge=0)
    file_hash: Optional[str] = None
    created_by: Optional[str] = None
    sheet_name: Optional[str] = None
    # Set when the file is already in storage; otherwise a path is allocated.
    storage_path: Optional[str] = None

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("file_name is required")
        return value


class CreateImportResponse(CamelModel):
    success: bool
    import_job_id: str
    storage_path: str
    upload_url: Optional[str] = None


class MappingDetectResponse(CamelModel):
    success: bool
    headers: List[str]
    mappings: List[ColumnMapping]
    required: RequiredMappingCheck
    summary: MappingSummary


class MappingUpdateRequest(CamelModel):
    mappings: List[ColumnMapping]


class ImportJobSummary(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    file_name: str
    file_type: str
    status: str
    created_by: Optional[str] = None
    total_rows: Optional[int] = None
    valid_rows: int = 0
    invalid_rows: int = 0
    imported_rows: int = 0
    skipped_rows: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportJobListResponse(CamelModel):
    success: bool
    jobs: List[ImportJobSummary]
    total_count: int
    limit: int
    offset: int


class ImportActionResponse(CamelModel):
    success: bool
    import_job_id: str
    status: str
    message: Optional[str] = None
