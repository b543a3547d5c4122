from typing import Optional, Dict, Literal, List
from pydantic import BaseModel, EmailStr, ConfigDict, Field


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None


class UserOut(BaseModel):
    id: int
    email: EmailStr
    full_name: Optional[str]
    is_admin: bool = False
    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SetCellStatesRequest(BaseModel):
    taxa_ids: List[int]
    character_ids: List[int]
    state_ids: List[int] = Field(default_factory=list)
    batch_mode: int = 0
    uncertain: bool = False


class SetContinuousValuesRequest(BaseModel):
    taxa_ids: List[int]
    character_ids: List[int]
    # strings are accepted so non-numeric input is reported as a user error
    start_value: Optional[float | str] = None
    end_value: Optional[float | str] = None
    batch_mode: int = 0


class CopyCellScoresRequest(BaseModel):
    source_taxon_id: int
    dest_taxon_id: int
    character_ids: List[int]
    batch_mode: bool = False
    copy_notes: bool = False


class SetCellNotesRequest(BaseModel):
    taxa_ids: List[int]
    character_ids: List[int]
    notes: Optional[str] = None
    status: Optional[int] = None
    batch_mode: int = 0


class AddCellMediaRequest(BaseModel):
    taxon_id: int
    character_ids: List[int]
    media_ids: List[int]
    batch_mode: bool = False


class RemoveCellMediaRequest(BaseModel):
    taxon_id: int
    character_id: int
    link_id: int
    transfer_citations: bool = False


class RemoveCellsMediaRequest(BaseModel):
    taxon_id: int
    character_ids: List[int]


class AddCellCitationsRequest(BaseModel):
    taxa_ids: List[int]
    character_ids: List[int]
    citation_id: int
    pp: Optional[str] = None
    notes: Optional[str] = None
    batch_mode: bool = False


class UpsertCellCitationRequest(BaseModel):
    taxon_id: int
    character_id: int
    citation_id: int
    pp: Optional[str] = None
    notes: Optional[str] = None


class CellCommentCreate(BaseModel):
    taxon_id: int
    character_id: int
    comment: str


class CellScopeRequest(BaseModel):
    taxa_ids: List[int]
    character_ids: List[int]


class RuleViolation(BaseModel):
    aid: int
    tid: int
    rcid: Optional[int] = None
    acid: Optional[int] = None
    sid: Optional[int] = None
    mid: Optional[int] = None


class FixRuleViolationsRequest(BaseModel):
    violations: List[RuleViolation]


class AddRuleActionRequest(BaseModel):
    character_id: int
    state_id: Optional[int] = None
    action_character_ids: List[int]
    action_state_id: Optional[int] = None
    action: Literal["SET_STATE", "ADD_MEDIA"] = "SET_STATE"


class RemoveRuleActionRequest(BaseModel):
    character_id: int
    action_id: int


class AddCharacterMediaRequest(BaseModel):
    character_id: int
    state_id: Optional[int] = None
    media_ids: List[int]


class UndoBatchRequest(BaseModel):
    id: int


class CellCountsRequest(BaseModel):
    start_character_num: int
    end_character_num: int
    start_taxon_num: int
    end_taxon_num: int


class SearchRequest(BaseModel):
    partition_id: Optional[int] = None
    taxon_id: Optional[int] = None
    limitation: str


class AddTaxaRequest(BaseModel):
    taxa_ids: List[int]
    after_taxon_id: Optional[int] = None


class TaxaRequest(BaseModel):
    taxa_ids: List[int]


class ReorderRequest(BaseModel):
    ids: List[int]
    index: int


class CharacterCreate(BaseModel):
    name: Optional[str] = None
    # 0 discrete, 1 continuous, 2 meristic
    type: int = 0
    index: Optional[int] = None


class CharactersRequest(BaseModel):
    character_ids: List[int]


class TaxaNotesRequest(BaseModel):
    taxa_ids: List[int]
    notes: str = ""


class TaxaAccessRequest(BaseModel):
    taxa_ids: List[int]
    user_id: Optional[int] = None
    group_id: Optional[int] = None


class MatrixOptionsRequest(BaseModel):
    options: Dict[str, int]


class PartitionCreate(BaseModel):
    name: str
    description: Optional[str] = None


class PartitionMembersRequest(BaseModel):
    ids: List[int]
