from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt


class _RuleBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    enabled: bool = Field(True, description="outcome returned when the rule matches")


class UserInListRule(_RuleBase):
    kind: Literal["user_in_list"]
    users: List[str]


class GroupInListRule(_RuleBase):
    kind: Literal["group_in_list"]
    groups: List[str]


class TimeWindowRule(_RuleBase):
    kind: Literal["time_window"]
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class PercentageOfRule(_RuleBase):
    kind: Literal["percentage_of"]
    subject_key: str = Field("subject", alias="subjectKey", description="'subject' or an attribute name")
    percentage: StrictInt


class AttributeRule(_RuleBase):
    kind: Literal["attribute"]
    attr: str = Field(..., description="attribute name, e.g., country, tier")
    op: Literal["eq", "ne", "in", "nin"] = "eq"
    value: Any


RuleSpec = Annotated[
    Union[UserInListRule, GroupInListRule, TimeWindowRule, PercentageOfRule, AttributeRule],
    Field(discriminator="kind"),
]


class FlagSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "key"))
    enabled: bool = False
    rules: List[RuleSpec] = []
    rollout_percentage: Optional[StrictInt] = Field(
        None, validation_alias=AliasChoices("rolloutPercentage", "rollout_percentage")
    )


class FlagSummary(BaseModel):
    name: str
    enabled: bool
    rule_count: int


class StoreOut(BaseModel):
    generation: int
    loaded_at: Optional[datetime] = None
    flags: List[FlagSummary]


class EvaluationResult(BaseModel):
    key: str
    enabled: bool
    reason: str
    generation: int


class ReloadResult(BaseModel):
    generation: int
    flags: int
