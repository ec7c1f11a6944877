"""End-of-run report listing errors, failures and the policy summary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pulumi

from ..errors import PlatformError

if TYPE_CHECKING:
    from ..policy.validator import PolicyReport
    from .orchestrator import MaterialisationSummary


@dataclass(frozen=True)
class ReportEntry:
    stage: str
    kind: str
    message: str
    resource: str | None = None

    def to_dict(self) -> dict:
        entry = {"stage": self.stage, "kind": self.kind, "message": self.message}
        if self.resource is not None:
            entry["resource"] = self.resource
        return entry


@dataclass
class RunReport:
    stack: str
    entries: list[ReportEntry] = field(default_factory=list)
    policy_report: "PolicyReport | None" = None

    @property
    def ok(self) -> bool:
        return not self.entries

    def add(self, stage: str, kind: str, message: str, resource: str | None = None) -> None:
        self.entries.append(ReportEntry(stage, kind, message, resource))

    def add_error(self, error: PlatformError) -> None:
        self.entries.append(ReportEntry(error.stage, error.kind, error.message, error.resource))

    def add_summary(self, summary: "MaterialisationSummary") -> None:
        for name in sorted(summary.failures):
            self.add_error(summary.failures[name])
        for name in summary.blocked:
            self.add(
                "materialisation",
                "not-attempted",
                "Left pending because a dependency did not complete",
                name,
            )
        if summary.cancelled:
            self.add("materialisation", "cancelled", "Run was cancelled before completion")

    def to_dict(self) -> dict:
        report = {"stack": self.stack, "entries": [entry.to_dict() for entry in self.entries]}
        if self.policy_report is not None:
            report["policies"] = self.policy_report.to_dict()
        return report

    def to_text(self) -> str:
        lines = [f"Run report for stack '{self.stack}'"]
        if self.policy_report is not None:
            lines.append(self.policy_report.to_text())
        for entry in self.entries:
            target = f" [{entry.resource}]" if entry.resource else ""
            lines.append(f"  {entry.stage}/{entry.kind}{target}: {entry.message}")
        if self.ok:
            lines.append("  no errors")
        return "\n".join(lines)

    def emit(self) -> None:
        """Write the report to the Pulumi log."""
        log = pulumi.log.info if self.ok else pulumi.log.error
        log(self.to_text())
