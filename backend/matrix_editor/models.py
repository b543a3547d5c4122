import time

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    ForeignKey,
    JSON,
    Integer,
    Text,
    Float,
)
from sqlalchemy.orm import relationship

from .database import Base


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String)
    is_admin = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(Float, default=time.time)


class Project(Base):
    __tablename__ = "projects"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    # 0 = unpublished, anything greater is a published project
    status = Column(Integer, default=0, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(Float, default=time.time)

    members = relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")


class ProjectMember(Base):
    __tablename__ = "project_members"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # 0 full, 1 observer, 2 character annotator, 3 bibliography maintainer, 4 anonymous
    membership_type = Column(Integer, default=0, nullable=False)

    project = relationship("Project", back_populates="members")
    user = relationship("User")
    groups = relationship("ProjectMembersXGroup", back_populates="membership", cascade="all, delete-orphan")

    __table_args__ = (sa.UniqueConstraint("project_id", "user_id", name="uq_project_member"),)


class ProjectMemberGroup(Base):
    __tablename__ = "project_member_groups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    group_name = Column(String, nullable=False)
    description = Column(Text)


class ProjectMembersXGroup(Base):
    __tablename__ = "project_members_x_groups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    membership_id = Column(Integer, ForeignKey("project_members.id"), nullable=False)
    group_id = Column(Integer, ForeignKey("project_member_groups.id"), nullable=False)

    membership = relationship("ProjectMember", back_populates="groups")


class Matrix(Base):
    __tablename__ = "matrices"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    title = Column(String, nullable=False)
    # 0 = discrete, 1 = meristic
    type = Column(Integer, default=0, nullable=False)
    other_options = Column(JSON, default=dict)
    # bumped once per committed unit of work that logs a change on this matrix
    sync_seq = Column(Integer, default=0, nullable=False)
    created_at = Column(Float, default=time.time)
    last_modified_on = Column(Float, default=time.time)

    def get_option(self, name: str) -> int:
        options = self.other_options or {}
        try:
            return int(options.get(name) or 0)
        except (TypeError, ValueError):
            return 0


class Character(Base):
    __tablename__ = "characters"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    # 0 = discrete, 1 = continuous, 2 = meristic
    type = Column(Integer, default=0, nullable=False)
    # 0 = unordered, 1 = ordered, 2 = irreversible
    ordering = Column(Integer, default=0, nullable=False)
    created_at = Column(Float, default=time.time)
    last_modified_on = Column(Float, default=time.time)

    states = relationship(
        "CharacterState",
        back_populates="character",
        cascade="all, delete-orphan",
        order_by="CharacterState.num",
    )


class CharacterState(Base):
    __tablename__ = "character_states"
    id = Column(Integer, primary_key=True, autoincrement=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    num = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)

    character = relationship("Character", back_populates="states")


class Taxon(Base):
    __tablename__ = "taxa"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    genus = Column(String)
    specific_epithet = Column(String)
    subspecific_epithet = Column(String)
    notes = Column(Text, default="")
    access = Column(Integer, default=0, nullable=False)
    created_at = Column(Float, default=time.time)
    last_modified_on = Column(Float, default=time.time)

    @property
    def display_name(self) -> str:
        parts = [self.genus, self.specific_epithet, self.subspecific_epithet]
        return " ".join(part for part in parts if part) or f"Taxon {self.id}"


class MatrixTaxaOrder(Base):
    __tablename__ = "matrix_taxa_order"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    position = Column(Integer, nullable=False)
    # optional owner restricting who may edit the taxon's cells
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    group_id = Column(Integer, ForeignKey("project_member_groups.id"), nullable=True)
    added_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    notes = Column(Text, default="")

    taxon = relationship("Taxon")

    __table_args__ = (sa.UniqueConstraint("matrix_id", "taxon_id", name="uq_matrix_taxon"),)


class MatrixCharacterOrder(Base):
    __tablename__ = "matrix_character_order"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    position = Column(Integer, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    character = relationship("Character")

    __table_args__ = (sa.UniqueConstraint("matrix_id", "character_id", name="uq_matrix_character"),)


class Specimen(Base):
    __tablename__ = "specimens"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    catalog_number = Column(String)
    description = Column(Text)


class TaxaXSpecimen(Base):
    __tablename__ = "taxa_x_specimens"
    id = Column(Integer, primary_key=True, autoincrement=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    specimen_id = Column(Integer, ForeignKey("specimens.id"), nullable=False)


class MediaView(Base):
    __tablename__ = "media_views"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    name = Column(String, nullable=False)


class MediaFile(Base):
    __tablename__ = "media_files"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    specimen_id = Column(Integer, ForeignKey("specimens.id"), nullable=True)
    view_id = Column(Integer, ForeignKey("media_views.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    # renditions keyed by size, e.g. {"icon": {...}, "tiny": {...}}
    media = Column(JSON, default=dict)
    created_at = Column(Float, default=time.time)


class CharactersXMedium(Base):
    __tablename__ = "characters_x_media"
    id = Column(Integer, primary_key=True, autoincrement=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("character_states.id"), nullable=True)
    media_id = Column(Integer, ForeignKey("media_files.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_on = Column(Float, default=time.time)


class Cell(Base):
    __tablename__ = "cells"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("character_states.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_npa = Column(Boolean, default=False, nullable=False)
    is_uncertain = Column(Boolean, default=False, nullable=False)
    start_value = Column(Float, nullable=True)
    end_value = Column(Float, nullable=True)
    created_on = Column(Float, default=time.time, nullable=False)
    last_modified_on = Column(Float, default=time.time, nullable=False)

    @property
    def state_key(self) -> int:
        if self.state_id is None:
            return -1 if self.is_npa else 0
        return self.state_id


class CellNote(Base):
    __tablename__ = "cell_notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    notes = Column(Text, default="", nullable=False)
    # 0 = new, 1 = in progress, 2 = complete
    status = Column(Integer, default=0, nullable=False)
    created_on = Column(Float, default=time.time)
    last_modified_on = Column(Float, default=time.time)

    __table_args__ = (sa.UniqueConstraint("matrix_id", "taxon_id", "character_id", name="uq_cell_note"),)


class CellComment(Base):
    __tablename__ = "cell_comments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    comment = Column(Text, nullable=False)
    created_on = Column(Float, default=time.time, nullable=False)

    user = relationship("User")


class CellsXMedium(Base):
    __tablename__ = "cells_x_media"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    media_id = Column(Integer, ForeignKey("media_files.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    set_by_automation = Column(Boolean, default=False, nullable=False)
    created_on = Column(Float, default=time.time)


class BibliographicReference(Base):
    __tablename__ = "bibliographic_references"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    title = Column(String, nullable=False)
    authors = Column(String)
    year = Column(Integer)


class MediaFilesXBibliographicReference(Base):
    __tablename__ = "media_files_x_bibliographic_references"
    id = Column(Integer, primary_key=True, autoincrement=True)
    media_id = Column(Integer, ForeignKey("media_files.id"), nullable=False)
    reference_id = Column(Integer, ForeignKey("bibliographic_references.id"), nullable=False)


class CellsXBibliographicReference(Base):
    __tablename__ = "cells_x_bibliographic_references"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    reference_id = Column(Integer, ForeignKey("bibliographic_references.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    pp = Column(String, default="")
    notes = Column(Text, default="")
    created_on = Column(Float, default=time.time)


class CharacterRule(Base):
    __tablename__ = "character_rules"
    id = Column(Integer, primary_key=True, autoincrement=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    # null triggers on a cell scored without a state ("-" or NPA)
    state_id = Column(Integer, ForeignKey("character_states.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_on = Column(Float, default=time.time)

    actions = relationship("CharacterRuleAction", back_populates="rule", cascade="all, delete-orphan")


class CharacterRuleAction(Base):
    __tablename__ = "character_rule_actions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("character_rules.id"), nullable=False)
    # SET_STATE or ADD_MEDIA
    action = Column(String, nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("character_states.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_on = Column(Float, default=time.time)

    rule = relationship("CharacterRule", back_populates="actions")


class CellBatchLog(Base):
    __tablename__ = "cell_batch_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    batch_type = Column(Integer, nullable=False)
    started_on = Column(Float, nullable=False)
    finished_on = Column(Float, nullable=True)
    description = Column(Text, default="")
    reverted = Column(Boolean, default=False, nullable=False)
    reverted_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)


class CellChangeLog(Base):
    __tablename__ = "cell_change_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # I = insert, U = update, D = delete, C = checked
    change_type = Column(String(1), nullable=False)
    table_num = Column(Integer, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    changed_on = Column(Float, nullable=False, index=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False, index=True)
    character_id = Column(Integer, nullable=False)
    taxon_id = Column(Integer, nullable=False)
    state_id = Column(Integer, nullable=True)
    snapshot = Column(JSON, default=dict)


class ChangeLog(Base):
    __tablename__ = "change_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    table_num = Column(Integer, nullable=False)
    row_id = Column(Integer, nullable=False)
    change_type = Column(String(1), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    logged_on = Column(Float, nullable=False, index=True)
    matrix_id = Column(Integer, ForeignKey("matrices.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False, index=True)


class Partition(Base):
    __tablename__ = "partitions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, default="")


class CharactersXPartition(Base):
    __tablename__ = "characters_x_partitions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    partition_id = Column(Integer, ForeignKey("partitions.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)

    __table_args__ = (sa.UniqueConstraint("partition_id", "character_id", name="uq_partition_character"),)


class TaxaXPartition(Base):
    __tablename__ = "taxa_x_partitions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    partition_id = Column(Integer, ForeignKey("partitions.id"), nullable=False)
    taxon_id = Column(Integer, ForeignKey("taxa.id"), nullable=False)

    __table_args__ = (sa.UniqueConstraint("partition_id", "taxon_id", name="uq_partition_taxon"),)
