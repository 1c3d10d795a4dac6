from typing import Literal

from pydantic import BaseModel, Field

Severity = Literal["error", "warning", "info"]


class ValidationIssue(BaseModel):
    message: str
    item_id: str | None = None
    severity: Severity = "error"


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    info: list[ValidationIssue] = Field(default_factory=list)

    def add_error(self, message: str, item_id: str | None = None) -> None:
        self.is_valid = False
        self.errors.append(ValidationIssue(message=message, item_id=item_id, severity="error"))

    def add_warning(self, message: str, item_id: str | None = None) -> None:
        self.warnings.append(ValidationIssue(message=message, item_id=item_id, severity="warning"))

    def add_info(self, message: str, item_id: str | None = None) -> None:
        self.info.append(ValidationIssue(message=message, item_id=item_id, severity="info"))

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Return a new result combining both; neither operand is modified."""
        return ValidationResult(
            is_valid=self.is_valid and other.is_valid,
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
            info=[*self.info, *other.info],
        )


class LinkCheck(BaseModel):
    url: str
    valid: bool
    type: Literal["internal", "external"]
    status: int | None = None
    error: str | None = None


class LinkCheckRequest(BaseModel):
    content: str


class LinkCheckResponse(BaseModel):
    valid: bool
    links: list[LinkCheck]
