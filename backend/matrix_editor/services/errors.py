"""Error hierarchy shared by the matrix editing services."""

from __future__ import annotations

# purpose: classify engine failures so routes can map them to HTTP responses
# status: pilot


class MatrixEditorError(RuntimeError):
    """Base error for matrix editing operations."""


class UserError(MatrixEditorError):
    """Raised for correctable input problems such as invalid state combinations."""

    def __init__(self, *messages: str):
        self.messages = [message for message in messages if message] or ["Invalid request"]
        super().__init__(self.messages[0])


class ForbiddenError(MatrixEditorError):
    """Raised when the acting user may not perform the requested change."""


class NotFoundError(MatrixEditorError):
    """Raised when a project, matrix or linked entity cannot be located."""
