from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from journey_engine.models.validation import ValidationIssue, ValidationResult

TemplateKind = Literal["email", "sms"]
DeploymentStatus = Literal["in_progress", "completed", "partial", "failed", "dry_run", "rolled_back"]
ItemStatus = Literal["pending", "published", "failed", "skipped", "restored"]
UpsertAction = Literal["created", "updated"]


class Touchpoint(BaseModel):
    id: str
    name: str
    type: str | None = "Email"
    content: dict[str, Any] = Field(default_factory=dict)
    external_id: str | None = None


class TemplateContent(BaseModel):
    name: str
    body: str = ""
    subject: str | None = None
    preview_text: str = ""


class DeploymentItem(BaseModel):
    id: str
    name: str
    type: str = "Email"
    status: ItemStatus = "pending"
    external_id: str | None = None
    action: UpsertAction | None = None
    error: str | None = None


class RollbackSnapshot(BaseModel):
    item_id: str
    kind: TemplateKind = "email"
    external_id: str | None = None
    prior_content: TemplateContent


class DeploymentSummary(BaseModel):
    total: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0


class RollbackItemResult(BaseModel):
    item_id: str
    external_id: str | None = None
    status: Literal["restored", "failed"]
    error: str | None = None


class RollbackResult(BaseModel):
    success: bool
    deployment_id: str
    total: int
    restored: int = 0
    failed: int = 0
    items: list[RollbackItemResult] = Field(default_factory=list)


class Deployment(BaseModel):
    id: str
    journey_id: str
    status: DeploymentStatus = "in_progress"
    dry_run: bool = False
    created_at: datetime
    completed_at: datetime | None = None
    items: list[DeploymentItem] = Field(default_factory=list)
    previous_version: list[RollbackSnapshot] | None = None
    summary: DeploymentSummary | None = None
    error: str | None = None
    validation_errors: list[ValidationIssue] | None = None
    rolled_back_at: datetime | None = None
    rollback_results: RollbackResult | None = None

    def find_item(self, item_id: str) -> DeploymentItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class PublishedItemResult(BaseModel):
    id: str
    name: str
    status: ItemStatus
    external_id: str | None = None
    action: UpsertAction | None = None
    error: str | None = None
    message: str | None = None


class PublishResult(BaseModel):
    success: bool
    deployment_id: str
    dry_run: bool = False
    total: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0
    items: list[PublishedItemResult] = Field(default_factory=list)
    validation: ValidationResult | None = None
    message: str | None = None


class ProgressEvent(BaseModel):
    current: int
    total: int
    item_name: str
    status: str


class DeploymentReportItem(BaseModel):
    name: str
    type: str
    status: ItemStatus
    external_id: str | None
    error: str | None


class DeploymentReportSummary(BaseModel):
    total: int
    published: int
    failed: int
    skipped: int
    pending: int
    restored: int


class DeploymentReport(BaseModel):
    id: str
    journey_id: str
    status: DeploymentStatus
    created_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    items: list[DeploymentReportItem]
    summary: DeploymentReportSummary


class PublishRequest(BaseModel):
    journey_id: str
    touchpoints: list[Touchpoint]
    skip_validation: bool = False
    dry_run: bool = False


class ValidateRequest(BaseModel):
    touchpoints: list[Touchpoint]


class DeploymentIdRequest(BaseModel):
    id: str


class DeploymentHistoryRequest(BaseModel):
    journey_id: str | None = None


class DeploymentHistoryItem(BaseModel):
    id: str
    journey_id: str
    status: DeploymentStatus
    dry_run: bool
    created_at: str
    completed_at: str | None
    rolled_back_at: str | None
    summary: DeploymentSummary | None


class DeploymentHistoryResponse(BaseModel):
    data: list[DeploymentHistoryItem]
