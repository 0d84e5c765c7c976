from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, Field

from security_labeling.services.labeling_types import CompilationOutcome, Severity


class OutcomeIssue(BaseModel):
    severity: Literal["success", "information", "warning", "error", "fatal"]
    code: str
    diagnostics: str


class OperationOutcome(BaseModel):
    resourceType: Literal["OperationOutcome"] = "OperationOutcome"
    issue: List[OutcomeIssue] = Field(default_factory=list)

    @classmethod
    def single(cls, severity: str, message: str, *, code: str | None = None) -> "OperationOutcome":
        issue_code = code or ("informational" if severity == Severity.SUCCESS.value else "processing")
        return cls(issue=[OutcomeIssue(severity=severity, code=issue_code, diagnostics=message)])

    @classmethod
    def from_compilation(cls, outcome: CompilationOutcome) -> "OperationOutcome":
        result = cls.single(outcome.severity.value, outcome.message)
        for detail in outcome.diagnostics:
            result.issue.append(OutcomeIssue(severity="warning", code="processing", diagnostics=detail))
        return result

    @property
    def is_error(self) -> bool:
        return bool(self.issue) and self.issue[0].severity == Severity.ERROR.value
