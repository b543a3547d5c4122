"""Engine handle binding a session, project, matrix and acting user."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from .. import models
from .errors import ForbiddenError, NotFoundError

# purpose: resolve the context every matrix editing operation runs against
# status: pilot

MATRIX_OPTIONS = (
    "APPLY_CHARACTERS_WHILE_SCORING",
    "ALLOW_OVERWRITING_BY_RULES",
    "DISABLE_SCORING",
    "ENABLE_CELL_MEDIA_AUTOMATION",
    "DEFAULT_NUMBERING_MODE",
    "DEFAULT_MULTISTATE_TAXA_MODE",
)

# options only project administrators may change
ADMIN_MATRIX_OPTIONS = frozenset({"DISABLE_SCORING", "ENABLE_CELL_MEDIA_AUTOMATION"})


@dataclass
class MatrixEditor:
    db: Session
    project: models.Project
    matrix: models.Matrix
    user: models.User
    readonly: bool = False
    _capabilities: frozenset[str] | None = field(default=None, repr=False)

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def matrix_id(self) -> int:
        return self.matrix.id

    def option(self, name: str) -> int:
        return self.matrix.get_option(name)

    def options(self) -> dict[str, int]:
        return {name: self.option(name) for name in MATRIX_OPTIONS}

    def ensure_writable(self) -> None:
        if self.readonly:
            raise ForbiddenError("This matrix was opened read-only")

    def now(self) -> float:
        return time.time()


def open_editor(
    db: Session,
    project_id: int,
    matrix_id: int,
    user_id: int,
    *,
    readonly: bool = False,
) -> MatrixEditor:
    """Return an engine handle or raise ``NotFoundError``."""

    project = db.get(models.Project, project_id)
    if project is None:
        raise NotFoundError("Project not found")
    matrix = db.get(models.Matrix, matrix_id)
    if matrix is None or matrix.project_id != project.id:
        raise NotFoundError("Matrix not found")
    user = db.get(models.User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return MatrixEditor(db=db, project=project, matrix=matrix, user=user, readonly=readonly)
