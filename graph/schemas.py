"""
Validation models for routing-model output.

The decision is a tagged union on ``topicAction``: a ``new`` payload must carry
a label, description and summary; ``continue_active`` / ``reopen_existing``
payloads may leave them empty. The combined profile extends both shapes with
capability fields.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

CapabilityTier = Literal["nano", "mini", "full", "pro"]
ReasoningEffort = Literal["none", "low", "medium", "high", "xhigh"]

EFFORT_LEVELS = ("none", "low", "medium", "high", "xhigh")


class _DecisionBase(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    primaryTopicId: Optional[str] = None
    secondaryTopicIds: List[str] = Field(default_factory=list)
    newParentTopicId: Optional[str] = None
    artifactsToLoad: List[str] = Field(default_factory=list)

    @field_validator("secondaryTopicIds", "artifactsToLoad", mode="before")
    @classmethod
    def _none_is_empty_list(cls, v):
        return [] if v is None else v

    @field_validator("primaryTopicId", "newParentTopicId", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class NewTopicPayload(_DecisionBase):
    topicAction: Literal["new"]
    newTopicLabel: str = Field(min_length=1, max_length=240)
    newTopicDescription: str = Field(min_length=1, max_length=500)
    newTopicSummary: str = Field(min_length=1, max_length=500)


class ExistingTopicPayload(_DecisionBase):
    topicAction: Literal["continue_active", "reopen_existing"]
    newTopicLabel: str = Field(default="", max_length=240)
    newTopicDescription: str = Field(default="", max_length=500)
    newTopicSummary: str = Field(default="", max_length=500)

    @field_validator("newTopicLabel", "newTopicDescription", "newTopicSummary", mode="before")
    @classmethod
    def _none_is_blank(cls, v):
        return "" if v is None else v


class _CapabilityFields(BaseModel):
    model: CapabilityTier
    effort: ReasoningEffort
    memoryTypesToLoad: List[str] = Field(default_factory=list)

    @field_validator("memoryTypesToLoad", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


class NewTopicCapabilityPayload(NewTopicPayload, _CapabilityFields):
    pass


class ExistingTopicCapabilityPayload(ExistingTopicPayload, _CapabilityFields):
    pass


TopicDecisionPayload = Annotated[
    Union[NewTopicPayload, ExistingTopicPayload],
    Field(discriminator="topicAction"),
]
CapabilityDecisionPayload = Annotated[
    Union[NewTopicCapabilityPayload, ExistingTopicCapabilityPayload],
    Field(discriminator="topicAction"),
]

TOPIC_DECISION_ADAPTER = TypeAdapter(TopicDecisionPayload)
CAPABILITY_DECISION_ADAPTER = TypeAdapter(CapabilityDecisionPayload)
