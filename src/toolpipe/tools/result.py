"""Result model shared by built-in and remote tools."""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class FileDiff(BaseModel):
    """The replaced and replacement text of an edit."""
    model_config = ConfigDict(frozen=True)

    file_path: str
    old_str: str
    new_str: str


class ToolResult(BaseModel):
    """Outcome of one tool call. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    tool: str
    result: str
    success: bool
    diff: Optional[FileDiff] = None
    call_id: Optional[str] = None
    # ToolErrorKind value when success is False because execution failed
    error_kind: Optional[str] = None
    # The call was not run; the caller has to obtain approval and re-run it
    pending_approval: bool = False
    file_path: Optional[str] = None
    lines_changed: Optional[int] = None
    command: Optional[str] = None

    @classmethod
    def failure(
        cls,
        tool: str,
        message: str,
        error_kind: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> "ToolResult":
        return cls(tool=tool, result=message, success=False,
                   error_kind=error_kind, call_id=call_id)

    def with_call_id(self, call_id: Optional[str]) -> "ToolResult":
        return self.model_copy(update={"call_id": call_id})

    def to_message(self) -> str:
        """Render the result for the next model turn."""
        status = "ok" if self.success else "error"
        return f"[{self.tool}: {status}]\n{self.result}"
