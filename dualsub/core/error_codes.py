"""
Standardised error handling for dualsub.
"""

from dualsub.core.constants import IssueType


class ChunkError(Exception):
    """Raised when a chunk hits a known terminal condition."""

    def __init__(self, issue_type: str, message: str, context: str | None = None):
        self.issue_type = issue_type
        self.message = message
        self.context = context
        super().__init__(f"[{issue_type}] {message}")


class ArtifactWriteError(ChunkError):
    """Raised when a prompt, response or parsed result cannot be persisted."""

    def __init__(self, message: str, context: str | None = None):
        super().__init__(IssueType.FORMAT, message, context)
