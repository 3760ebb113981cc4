"""
Generated file model — output of the unit and proxy renderers.
"""

from __future__ import annotations

import hashlib

from pydantic import BaseModel


class GeneratedFile(BaseModel):
    """A file procon renders and installs on the host.

    Attributes:
        path:    Absolute install location.
        content: Full file content.
        reason:  What the file is for (shown in plan output).
    """

    path: str
    content: str
    reason: str = ""

    @property
    def content_hash(self) -> str:
        """sha256 of the content, recorded in the snapshot."""
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()
