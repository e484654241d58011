"""
Document workspace for the FileCreator tools.

WHAT THIS FILE DOES:
-------------------
FileCreator steps write documents (markdown for now) that later steps can
reference, e.g. push to GitHub or mail to someone. This module owns the
folder those documents live in and keeps a small index of what was written.

DIRECTORY STRUCTURE:
-------------------
<base>/                       (default ~/.agentichq/documents)
├── README.md
├── notes/
│   └── meeting.md
└── workspace.json            # index: id -> file, next id

Every path is resolved inside <base>; anything that would escape it is
rejected.
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


METADATA_FILE = "workspace.json"


class WorkspaceManager:
    """
    Manages the document folder.

    Provides:
    - Sandboxed writes (no directory traversal)
    - Sequential document ids that survive restarts
    - Listing and stats for the UI

    Usage:
        workspace = WorkspaceManager(Path("~/.agentichq/documents"))
        doc = workspace.write_document("README.md", "# Hello")
        print(doc["id"], doc["localPath"])
    """

    def __init__(self, base_path: Path):
        """
        Initialize workspace manager.

        Args:
            base_path: Folder documents are written to (created on demand)
        """
        self.workspace_path = Path(base_path).expanduser().resolve()
        self._lock = threading.Lock()
        self._metadata: Optional[dict] = None

    @property
    def path(self) -> Path:
        """Get the workspace path."""
        return self.workspace_path

    def setup(self) -> Path:
        """Create the folder and load (or start) the index."""
        self.workspace_path.mkdir(parents=True, exist_ok=True)
        if self._metadata is None:
            self._metadata = self._read_metadata()
        return self.workspace_path

    def _read_metadata(self) -> dict:
        metadata_path = self.workspace_path / METADATA_FILE
        if metadata_path.exists():
            with open(metadata_path) as f:
                return json.load(f)
        return {
            "created_at": datetime.now().isoformat(),
            "next_id": 1,
            "documents": {},
        }

    def _write_metadata(self) -> None:
        """Write the index to disk."""
        metadata_path = self.workspace_path / METADATA_FILE
        self._metadata["updated_at"] = datetime.now().isoformat()

        with open(metadata_path, "w") as f:
            json.dump(self._metadata, f, indent=2)

    def _resolve_path(self, path: str) -> Path:
        """
        Resolve a path within the workspace, preventing directory traversal.

        Raises:
            ValueError: If path is empty or attempts to escape workspace
        """
        # Remove leading slashes to treat as relative
        path = path.strip().lstrip("/")
        if not path:
            raise ValueError("File name must not be empty")

        full_path = (self.workspace_path / path).resolve()

        try:
            full_path.relative_to(self.workspace_path)
        except ValueError:
            raise ValueError(f"Path '{path}' attempts to escape workspace")

        if full_path.name == METADATA_FILE:
            raise ValueError(f"'{METADATA_FILE}' is reserved")

        return full_path

    def write_document(self, filename: str, content: str) -> dict:
        """
        Write a document and record it in the index.

        Args:
            filename: Relative path of the document
            content: Document text

        Returns:
            Record with id, fileName, localPath, content, size, createdAt

        Raises:
            ValueError: If the path is unusable
        """
        with self._lock:
            self.setup()
            full_path = self._resolve_path(filename)
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_text(content, encoding="utf-8")

            doc_id = self._metadata["next_id"]
            self._metadata["next_id"] = doc_id + 1
            rel_path = str(full_path.relative_to(self.workspace_path))
            record = {
                "id": doc_id,
                "fileName": full_path.name,
                "localPath": str(full_path),
                "content": content,
                "size": len(content.encode("utf-8")),
                "createdAt": datetime.now().isoformat(),
            }
            self._metadata["documents"][str(doc_id)] = {
                "path": rel_path,
                "size": record["size"],
                "createdAt": record["createdAt"],
            }
            self._write_metadata()

        return record

    def get_document_path(self, doc_id: int) -> Optional[Path]:
        """Path of a document by its id, or None if unknown."""
        self.setup()
        entry = self._metadata["documents"].get(str(doc_id))
        if not entry:
            return None
        return self.workspace_path / entry["path"]

    def list_files(self, pattern: str = "*") -> list[str]:
        """
        List documents matching a glob pattern.

        Returns:
            Sorted relative paths (the index file is left out)
        """
        if not self.workspace_path.exists():
            return []

        files = []
        for file_path in self.workspace_path.rglob(pattern):
            if file_path.is_file() and file_path.name != METADATA_FILE:
                files.append(str(file_path.relative_to(self.workspace_path)))

        return sorted(files)

    def get_stats(self) -> dict:
        """
        Get workspace statistics.

        Returns:
            Dict with file counts and sizes
        """
        total_size = 0
        file_count = 0

        for rel_path in self.list_files():
            file_count += 1
            total_size += (self.workspace_path / rel_path).stat().st_size

        return {
            "path": str(self.workspace_path),
            "file_count": file_count,
            "total_size_bytes": total_size,
        }
