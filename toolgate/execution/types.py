from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ExecutionContext:
    """The only per-turn state on the tool-calling path."""

    actor_id: str
    session_id: Optional[str] = None
    dry_run: bool = False


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    # One of toolgate.errors.* when success is False.
    error_kind: Optional[str] = None
    row_count: Optional[int] = None
    dry_run_statement: Optional[str] = None
    # False when the audit write failed; independent of success.
    audited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def outcome_summary(self) -> Dict[str, Any]:
        """Compact result stored in the audit record."""
        out: Dict[str, Any] = {"success": self.success}
        if self.row_count is not None:
            out["row_count"] = self.row_count
        if self.dry_run_statement:
            out["statement"] = self.dry_run_statement
        if self.error_kind:
            out["error_kind"] = self.error_kind
        return out
