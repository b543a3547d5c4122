import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from matrix_editor import main as main_module
from matrix_editor.main import app
from matrix_editor import models, presence
from matrix_editor.auth import create_access_token, get_password_hash
from matrix_editor.database import Base, enable_sqlite_foreign_keys, get_db
from matrix_editor.services.editor import open_editor

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db
main_module.SessionLocal = TestingSessionLocal


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    presence._registry = None
    yield
    presence._registry = None


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


class MatrixFactory:
    """Builds projects, matrices and their taxa, characters and media for tests."""

    def __init__(self, db):
        self.db = db

    def user(self, *, is_admin=False, full_name=None):
        user = models.User(
            email=f"user-{uuid.uuid4()}@example.com",
            hashed_password=get_password_hash("secret"),
            full_name=full_name,
            is_admin=is_admin,
        )
        self.db.add(user)
        self.db.flush()
        return user

    def headers(self, user):
        return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}

    def project(self, owner, *, status=0):
        project = models.Project(name="Squamate morphology", status=status, user_id=owner.id)
        self.db.add(project)
        self.db.flush()
        self.member(project, owner)
        return project

    def member(self, project, user, *, membership_type=0, groups=()):
        membership = models.ProjectMember(project_id=project.id, user_id=user.id, membership_type=membership_type)
        self.db.add(membership)
        self.db.flush()
        for group in groups:
            self.db.add(models.ProjectMembersXGroup(membership_id=membership.id, group_id=group.id))
        self.db.flush()
        return membership

    def group(self, project, name="Lizard team"):
        group = models.ProjectMemberGroup(project_id=project.id, group_name=name)
        self.db.add(group)
        self.db.flush()
        return group

    def matrix(self, project, *, options=None, matrix_type=0):
        matrix = models.Matrix(
            project_id=project.id,
            user_id=project.user_id,
            title="Main matrix",
            type=matrix_type,
            other_options=dict(options or {}),
        )
        self.db.add(matrix)
        self.db.flush()
        return matrix

    def character(self, project, matrix=None, *, name=None, states=("absent", "present"), character_type=0):
        character = models.Character(
            project_id=project.id,
            name=name or f"Character {uuid.uuid4().hex[:6]}",
            type=character_type,
        )
        self.db.add(character)
        self.db.flush()
        for num, state_name in enumerate(states if character_type == 0 else ()):
            self.db.add(models.CharacterState(character_id=character.id, num=num, name=state_name))
        if matrix is not None:
            position = (
                self.db.query(models.MatrixCharacterOrder)
                .filter(models.MatrixCharacterOrder.matrix_id == matrix.id)
                .count()
                + 1
            )
            self.db.add(models.MatrixCharacterOrder(matrix_id=matrix.id, character_id=character.id, position=position))
        self.db.flush()
        self.db.refresh(character)
        return character

    def taxon(self, project, matrix=None, *, genus="Anolis", epithet=None, owner=None, group=None):
        taxon = models.Taxon(
            project_id=project.id,
            genus=genus,
            specific_epithet=epithet or uuid.uuid4().hex[:6],
        )
        self.db.add(taxon)
        self.db.flush()
        if matrix is not None:
            position = (
                self.db.query(models.MatrixTaxaOrder).filter(models.MatrixTaxaOrder.matrix_id == matrix.id).count() + 1
            )
            self.db.add(
                models.MatrixTaxaOrder(
                    matrix_id=matrix.id,
                    taxon_id=taxon.id,
                    position=position,
                    user_id=owner.id if owner else None,
                    group_id=group.id if group else None,
                    notes="",
                )
            )
            self.db.flush()
        return taxon

    def view(self, project, name="dorsal"):
        view = models.MediaView(project_id=project.id, name=name)
        self.db.add(view)
        self.db.flush()
        return view

    def specimen(self, project, taxon):
        specimen = models.Specimen(project_id=project.id, catalog_number=f"MCZ {uuid.uuid4().hex[:5]}")
        self.db.add(specimen)
        self.db.flush()
        self.db.add(models.TaxaXSpecimen(taxon_id=taxon.id, specimen_id=specimen.id))
        self.db.flush()
        return specimen

    def media(self, project, *, specimen=None, view=None):
        media_file = models.MediaFile(
            project_id=project.id,
            specimen_id=specimen.id if specimen else None,
            view_id=view.id if view else None,
            media={"icon": {"url": "icon.jpg"}, "tiny": {"url": "tiny.jpg"}},
        )
        self.db.add(media_file)
        self.db.flush()
        return media_file

    def reference(self, project, title="Etheridge 1967"):
        reference = models.BibliographicReference(project_id=project.id, title=title)
        self.db.add(reference)
        self.db.flush()
        return reference

    def rule(self, trigger, trigger_state, target, target_state=None, action="SET_STATE"):
        rule = models.CharacterRule(
            character_id=trigger.id,
            state_id=trigger_state.id if trigger_state else None,
        )
        self.db.add(rule)
        self.db.flush()
        self.db.add(
            models.CharacterRuleAction(
                rule_id=rule.id,
                action=action,
                character_id=target.id,
                state_id=target_state.id if target_state else None,
            )
        )
        self.db.flush()
        return rule

    def editor(self, project, matrix, user, *, readonly=False):
        return open_editor(self.db, project.id, matrix.id, user.id, readonly=readonly)


@pytest.fixture
def factory(db):
    return MatrixFactory(db)


@pytest.fixture
def scene(factory):
    """An owner, a project and a matrix with three taxa and three characters."""

    owner = factory.user(full_name="Mara Owner")
    project = factory.project(owner)
    matrix = factory.matrix(project)
    characters = [factory.character(project, matrix, name=name) for name in ("Tail", "Scales", "Crest")]
    taxa = [factory.taxon(project, matrix, epithet=epithet) for epithet in ("carolinensis", "sagrei", "equestris")]
    factory.db.commit()
    return {
        "owner": owner,
        "project": project,
        "matrix": matrix,
        "characters": characters,
        "taxa": taxa,
    }


def ensure_access_token(client, *, email: str | None = None, password: str = "secret"):
    """
    purpose: ensure deterministic access tokens for tests while tolerating reused accounts
    inputs: fastapi TestClient, optional email override, password string
    outputs: tuple(access_token str, normalized email str)
    status: active
    """

    normalized_email = email or f"user-{uuid.uuid4()}@example.com"
    payload = {"email": normalized_email, "password": password}
    resp = client.post("/api/auth/register", json=payload)
    if resp.status_code == 200:
        data = resp.json()
    else:
        body = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        if resp.status_code == 400 and body.get("detail") == "Email already registered":
            login_resp = client.post("/api/auth/login", json=payload)
            assert login_resp.status_code == 200, f"Login failed for existing user {normalized_email}: {login_resp.text}"
            data = login_resp.json()
        else:
            raise AssertionError(f"Unexpected auth bootstrap failure for {normalized_email}: {resp.status_code} {resp.text}")
    token = data.get("access_token")
    if not token:
        raise AssertionError(f"Authentication response missing token for {normalized_email}: {data}")
    return token, normalized_email


@pytest.fixture
def auth_headers(client):
    token, email = ensure_access_token(client)
    return {"Authorization": f"Bearer {token}"}, email
