"""Workspace management for Shepherd.

This module knows where everything lives inside a workspace: the private
data directory (task store and port file), the requirement documents and the
global design guide. It also owns the small amount of Markdown handling the
control plane needs (titles, slugs, design-guide merging).
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ValidationError
from .shepherd_logging import log_error_with_context

logger = logging.getLogger("shepherd.workspace")

ROOT_ENV = "SHEPHERD_WORKSPACE_ROOT"
DATA_DIR_ENV = "SHEPHERD_DATA_DIR"
DEFAULT_DATA_DIR = ".shepherd"

REQUIREMENTS_DIR = Path("docs") / "requirements"
DESIGN_GUIDE_NAME = "design.md"
TASKS_FILE_NAME = "tasks.json"
PORT_FILE_NAME = ".port"

_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_SECTION_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*$")


def data_dir_name() -> str:
    return os.getenv(DATA_DIR_ENV) or DEFAULT_DATA_DIR


# ------------------------------------------------------------------
# Root detection
# ------------------------------------------------------------------


def _candidate_bases(start: Optional[Path] = None) -> List[Path]:
    cwd = (start or Path.cwd()).resolve()
    return [cwd, *cwd.parents]


def locate_workspace_root(start: Optional[Path] = None) -> Optional[Path]:
    """Nearest ancestor of ``start`` (default: cwd) holding the data directory."""
    marker = data_dir_name()
    for base in _candidate_bases(start):
        if (base / marker).is_dir():
            return base
    return None


def resolve_root(root: Optional[str] = None, *, start: Optional[Path] = None) -> Path:
    """Resolve the workspace root from an argument, the environment, or the cwd."""
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = locate_workspace_root(start)
    if detected_root:
        return detected_root

    raise ValueError(
        f"Unable to determine workspace root automatically. Pass --root or set the {ROOT_ENV} "
        f"environment variable, or run inside a workspace that contains '{data_dir_name()}/'."
    )


# ------------------------------------------------------------------
# Markdown helpers
# ------------------------------------------------------------------


def document_title(content: str, fallback: str) -> str:
    """First level-one heading of a Markdown document, or ``fallback``."""
    match = _HEADING_RE.search(content or "")
    return match.group(1).strip() if match else fallback


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "requirement"


def split_sections(content: str) -> List[List[str]]:
    """Split Markdown into ``[heading_line, *body_lines]`` chunks.

    The first chunk holds whatever precedes the first heading and has an
    empty string as its heading line.
    """
    sections: List[List[str]] = [[""]]
    for line in content.splitlines():
        if _SECTION_RE.match(line):
            sections.append([line])
        else:
            sections[-1].append(line)
    return sections


def _section_key(heading_line: str) -> str:
    match = _SECTION_RE.match(heading_line)
    if not match:
        return ""
    return f"{len(match.group(1))}:{match.group(2).strip().lower()}"


def merge_design_guide(existing: str, additions: str) -> str:
    """Merge ``additions`` into ``existing`` section by section.

    A section of ``additions`` whose heading already exists replaces that
    section's body; new sections are appended in order. Text before the
    first heading of ``additions`` is appended to the preamble.
    """
    if not existing or not existing.strip():
        return additions.strip() + "\n"
    if not additions or not additions.strip():
        return existing if existing.endswith("\n") else existing + "\n"

    merged = split_sections(existing)
    index: Dict[str, int] = {}
    for position, section in enumerate(merged):
        key = _section_key(section[0])
        if key:
            index.setdefault(key, position)

    for section in split_sections(additions):
        key = _section_key(section[0])
        if not key:
            body = "\n".join(section[1:]).strip()
            if body:
                merged[0].extend(["", body])
            continue
        if key in index:
            merged[index[key]] = section
        else:
            index[key] = len(merged)
            merged.append(section)

    lines: List[str] = []
    for section in merged:
        chunk = section if section[0] else section[1:]
        text = "\n".join(chunk).strip("\n")
        if text.strip():
            lines.append(text)
    return "\n\n".join(lines) + "\n"


@dataclass(slots=True)
class DocumentSnapshot:
    """Previous state of a document, used to undo a write."""

    path: Path
    content: Optional[str]

    def restore(self) -> None:
        if self.content is None:
            self.path.unlink(missing_ok=True)
        else:
            self.path.write_text(self.content, encoding="utf-8")


class Workspace:
    """Filesystem layout of one Shepherd workspace."""

    def __init__(self, root: Path | str):
        """Initialize workspace with given root directory."""
        self.root = Path(root).resolve()
        self.base_dir = self.root / data_dir_name()
        self.tasks_path = self.base_dir / TASKS_FILE_NAME
        self.port_path = self.base_dir / PORT_FILE_NAME
        self.requirements_dir = self.root / REQUIREMENTS_DIR
        self.design_path = self.requirements_dir / DESIGN_GUIDE_NAME

    def ensure_dirs(self) -> "Workspace":
        """Create the data and requirements directories."""
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            self.requirements_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create workspace directories: {e}")
            raise RuntimeError(f"Could not initialize workspace at {self.root}: {e}")
        return self

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def resolve_document(self, relative_path: str) -> Path:
        """Absolute path for a workspace-relative document path.

        Rejects absolute paths and anything resolving outside the workspace.
        """
        if not isinstance(relative_path, str) or not relative_path.strip():
            raise ValidationError("Requirement path cannot be empty")
        candidate = Path(relative_path.strip())
        if candidate.is_absolute():
            raise ValidationError(f"Requirement path must be relative to the workspace: '{relative_path}'")
        resolved = (self.root / candidate).resolve()
        if resolved == self.root or not resolved.is_relative_to(self.root):
            raise ValidationError(f"Invalid requirement path: '{relative_path}' must be within the workspace")
        return resolved

    # ------------------------------------------------------------------
    # Requirement documents
    # ------------------------------------------------------------------

    def list_requirements(self) -> List[Dict[str, str]]:
        """List Markdown requirement files with their titles."""
        if not self.requirements_dir.is_dir():
            return []
        files = []
        for path in sorted(self.requirements_dir.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning(f"Skipping unreadable requirement {path}: {e}")
                continue
            files.append({"path": self.relative(path), "title": document_title(content, path.stem)})
        return files

    def write_document(self, relative_path: str, content: str) -> DocumentSnapshot:
        """Write a document and return a snapshot that can undo the write."""
        path = self.resolve_document(relative_path)
        previous = path.read_text(encoding="utf-8") if path.is_file() else None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            log_error_with_context(e, {"operation": "write_document", "path": relative_path})
            raise
        logger.info(f"Wrote requirement document {relative_path}")
        return DocumentSnapshot(path=path, content=previous)

    def create_requirement(self, relative_path: str, content: str) -> Dict[str, str]:
        if content is None:
            raise ValidationError("Requirement content is required")
        self.write_document(relative_path, content)
        path = self.resolve_document(relative_path)
        return {"path": self.relative(path), "title": document_title(content, path.stem)}

    def derive_requirement_path(self, content: str, requested: Optional[str] = None) -> str:
        """Path for a proposal's requirement document.

        Uses ``requested`` unless it is empty or points at the design guide;
        otherwise derives a unique slug from the document's first heading.
        """
        if requested and requested.strip() and not requested.strip().endswith(DESIGN_GUIDE_NAME):
            return self.relative(self.resolve_document(requested))

        base_slug = slugify(document_title(content, "requirement"))
        slug = base_slug
        counter = 1
        while (self.requirements_dir / f"{slug}.md").exists():
            counter += 1
            slug = f"{base_slug}-{counter}"
        return (REQUIREMENTS_DIR / f"{slug}.md").as_posix()

    # ------------------------------------------------------------------
    # Design guide
    # ------------------------------------------------------------------

    def read_design_guide(self) -> str:
        if not self.design_path.is_file():
            return ""
        return self.design_path.read_text(encoding="utf-8")

    def design_guide_path(self) -> str:
        return self.relative(self.design_path)

    # ------------------------------------------------------------------
    # Agent wiring
    # ------------------------------------------------------------------

    def ensure_mcp_config(self, launcher: Optional[Path] = None) -> Path:
        """Merge a ``shepherd`` server entry into ``<root>/.mcp.json``."""
        mcp_file = self.root / ".mcp.json"
        config: Dict = {}
        if mcp_file.exists():
            try:
                config = json.loads(mcp_file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                logger.warning(f"Replacing unparsable {mcp_file}: {e}")
                config = {}

        launcher = launcher or Path(sys.argv[0]).resolve()
        servers = config.setdefault("mcpServers", {})
        expected = {
            "command": sys.executable,
            "args": [str(launcher), "gateway", "--root", str(self.root)],
        }
        if servers.get("shepherd") != expected:
            servers["shepherd"] = expected
            mcp_file.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
            logger.info(f"Registered shepherd gateway in {mcp_file}")
        return mcp_file
