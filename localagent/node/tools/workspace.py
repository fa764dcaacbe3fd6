"""Built-in file tools confined to the workspace directory."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .registry import SafetyTier, ToolAction, ToolPlugin, ToolResult

MAX_LIST_ENTRIES = 200


class WorkspacePlugin(ToolPlugin):
    name = "workspace"
    display_name = "Workspace"
    category = "files"
    actions = [
        ToolAction(
            name="read_file",
            description="Read a text file from the workspace.",
            parameters={
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Path relative to the workspace"}},
                "required": ["path"],
            },
        ),
        ToolAction(
            name="list_files",
            description="List files and directories in a workspace directory.",
            parameters={
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Directory relative to the workspace"}},
            },
        ),
        ToolAction(
            name="write_file",
            description="Create or overwrite a text file in the workspace.",
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path relative to the workspace"},
                    "content": {"type": "string", "description": "Text content to write"},
                },
                "required": ["path", "content"],
            },
            safety=SafetyTier.WRITE,
            rate_limit=30,
        ),
    ]

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def resolve_path(self, path: Any) -> Path | None:
        """Map a model-supplied path into the workspace, or None if it escapes."""
        # Models often think they live in / or /workspace
        clean_path = str(path or ".").lstrip("/")
        if clean_path.startswith("workspace/"):
            clean_path = clean_path[len("workspace/"):]

        file_path = (self.root / clean_path).resolve()
        try:
            file_path.relative_to(self.root)
        except ValueError:
            return None
        return file_path

    async def execute(self, action: str, params: dict[str, Any]) -> ToolResult:
        if action == "read_file":
            return self.read_file(params.get("path"))
        if action == "list_files":
            return self.list_files(params.get("path", "."))
        if action == "write_file":
            return self.write_file(params.get("path"), params.get("content", ""))
        return ToolResult(False, f"Unknown action: {action}", error="ACTION_NOT_FOUND")

    def read_file(self, path: Any) -> ToolResult:
        if not path:
            return ToolResult(False, "Missing required parameter: path", error="INVALID_PARAMS")
        file_path = self.resolve_path(path)
        if file_path is None:
            return ToolResult(False, "Access denied: cannot read files outside the workspace.", error="ACCESS_DENIED")
        if not file_path.is_file():
            return ToolResult(False, f"File not found in workspace: {path}", error="NOT_FOUND")

        content = file_path.read_text(encoding="utf-8", errors="replace")
        return ToolResult(True, content, data={"path": str(file_path.relative_to(self.root))})

    def list_files(self, path: Any) -> ToolResult:
        dir_path = self.resolve_path(path)
        if dir_path is None:
            return ToolResult(False, "Access denied: cannot list outside the workspace.", error="ACCESS_DENIED")
        if not dir_path.is_dir():
            return ToolResult(False, f"Directory not found in workspace: {path}", error="NOT_FOUND")

        entries = sorted(
            f"{p.name}/" if p.is_dir() else p.name
            for p in dir_path.iterdir()
        )
        shown = entries[:MAX_LIST_ENTRIES]
        output = "\n".join(shown) if shown else "(empty directory)"
        if len(entries) > len(shown):
            output += f"\n... and {len(entries) - len(shown)} more"
        return ToolResult(True, output, data={"entries": shown})

    def write_file(self, path: Any, content: Any) -> ToolResult:
        if not path:
            return ToolResult(False, "Missing required parameter: path", error="INVALID_PARAMS")
        file_path = self.resolve_path(path)
        if file_path is None or file_path == self.root:
            return ToolResult(
                False,
                f"Access denied: path must be inside the workspace directory. You provided: {path}",
                error="ACCESS_DENIED",
            )

        file_path.parent.mkdir(parents=True, exist_ok=True)
        text = content if isinstance(content, str) else str(content)
        file_path.write_text(text, encoding="utf-8")
        rel = file_path.relative_to(self.root)
        return ToolResult(True, f"Wrote {len(text)} characters to {rel}", data={"path": str(rel)})
