"""
Pydantic models for hanging protocol definitions and match results.

Protocol definitions are authored as JSON with camelCase keys
(``viewportStructure``, ``displaySetIndex``, ...). The models accept either
camelCase or snake_case names and dump back to camelCase with
``model_dump(by_alias=True)``.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import ProtocolValidationError

logger = logging.getLogger(__name__)


def _empty_if_none(value):
    return {} if value is None else value


class HangingModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ---------------------------------------------------------------------------
# Protocol definitions
# ---------------------------------------------------------------------------

class Rule(HangingModel):
    """A single attribute test, e.g. ``Modality`` must equal ``CT``.

    ``constraint`` maps operator names to expected values, either bare or
    wrapped as ``{"value": ...}``. All operators in a constraint must pass.
    """
    id: Optional[str] = None
    attribute: str
    constraint: Dict[str, Any] = Field(default_factory=dict)
    weight: float = 1
    required: bool = False

    @field_validator("constraint", mode="before")
    @classmethod
    def _default_constraint(cls, value):
        return _empty_if_none(value)


class DisplaySetRuleSet(HangingModel):
    id: str
    study_matching_rules: List[Rule] = Field(default_factory=list)
    series_matching_rules: List[Rule] = Field(default_factory=list)
    find_all: bool = False

    @field_validator("study_matching_rules", "series_matching_rules", mode="before")
    @classmethod
    def _default_rules(cls, value):
        return [] if value is None else value


class ViewportDisplaySet(HangingModel):
    id: str
    display_set_index: int = 0
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("options", mode="before")
    @classmethod
    def _default_options(cls, value):
        return _empty_if_none(value)


class ViewportSpec(HangingModel):
    viewport_options: Dict[str, Any] = Field(default_factory=dict)
    display_sets: List[ViewportDisplaySet] = Field(default_factory=list)

    @field_validator("viewport_options", mode="before")
    @classmethod
    def _default_viewport_options(cls, value):
        return _empty_if_none(value)

    @field_validator("display_sets", mode="before")
    @classmethod
    def _default_display_sets(cls, value):
        return [] if value is None else value


class LayoutProperties(HangingModel):
    rows: int = 1
    columns: int = 1
    layout_options: List[Any] = Field(default_factory=list)

    @field_validator("layout_options", mode="before")
    @classmethod
    def _default_layout_options(cls, value):
        return [] if value is None else value


class ViewportStructure(HangingModel):
    type: str = "grid"
    properties: Optional[LayoutProperties] = None


class Stage(HangingModel):
    """One layout of a protocol.

    ``viewports`` and ``display_sets`` stay ``None`` when the author left
    them out, so that an incomplete stage can be told apart from an empty
    one. ``validate_protocol`` generates the missing viewports.
    """
    id: Optional[str] = None
    name: Optional[str] = None
    viewport_structure: Optional[ViewportStructure] = None
    viewports: Optional[List[ViewportSpec]] = None
    display_sets: Optional[List[DisplaySetRuleSet]] = None


class Protocol(HangingModel):
    id: Optional[str] = None
    name: Optional[str] = None
    stages: List[Stage] = Field(default_factory=list)
    protocol_matching_rules: List[Rule] = Field(default_factory=list)
    image_load_strategy: Optional[str] = None

    @field_validator("stages", "protocol_matching_rules", mode="before")
    @classmethod
    def _default_lists(cls, value):
        return [] if value is None else value


# ---------------------------------------------------------------------------
# Match results
# ---------------------------------------------------------------------------

class RuleResult(HangingModel):
    rule: Rule
    passed: bool
    score: float = 0
    value: Any = None
    messages: List[str] = Field(default_factory=list)


class MatchDetails(HangingModel):
    passed: List[RuleResult] = Field(default_factory=list)
    failed: List[RuleResult] = Field(default_factory=list)


class MatchResult(HangingModel):
    score: float = 0
    required_failed: bool = False
    details: MatchDetails = Field(default_factory=MatchDetails)


class SortingInfo(HangingModel):
    score: float
    study: Optional[str] = None
    series: Optional[int] = None


class CandidateMatch(HangingModel):
    """A (study, display set) pair that passed every required rule of a rule set."""
    study_instance_uid: Optional[str] = Field(default=None, alias="StudyInstanceUID")
    series_instance_uid: Optional[str] = Field(default=None, alias="SeriesInstanceUID")
    display_set_instance_uid: Optional[str] = Field(default=None, alias="displaySetInstanceUID")
    matching_score: float = 0
    match_details: MatchDetails = Field(default_factory=MatchDetails)
    sorting_info: SortingInfo
    matching_scores: List["CandidateMatch"] = Field(default_factory=list)


class DisplaySetInfo(HangingModel):
    series_instance_uid: Optional[str] = Field(default=None, alias="SeriesInstanceUID")
    display_set_instance_uid: Optional[str] = Field(default=None, alias="displaySetInstanceUID")
    display_set_options: Dict[str, Any] = Field(default_factory=dict)


class ViewportMatch(HangingModel):
    viewport_options: Dict[str, Any] = Field(default_factory=dict)
    display_sets_info: List[DisplaySetInfo] = Field(default_factory=list)


CandidateMatch.model_rebuild()


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------

def parse_protocol(protocol: Union[Protocol, Mapping[str, Any]]) -> Protocol:
    """
    Convert a protocol definition into a `Protocol` model.

    Args:
        protocol (Union[Protocol, Mapping[str, Any]]): A model (returned as is) or a mapping
            such as one loaded from a JSON file.

    Returns:
        Protocol: The parsed protocol.

    Raises:
        ProtocolValidationError: If the mapping does not describe a protocol.
    """
    if isinstance(protocol, Protocol):
        return protocol
    try:
        return Protocol.model_validate(protocol)
    except ValidationError as e:
        name = protocol.get("id") or protocol.get("name") if isinstance(protocol, Mapping) else None
        raise ProtocolValidationError(
            f"Invalid hanging protocol '{name}': {e.error_count()} validation error(s).",
            errors=e.errors(),
        ) from e


def validate_protocol(protocol: Protocol) -> Protocol:
    """
    Fill in the structural defaults of a protocol, in place.

    - ``id`` and ``name`` default to each other.
    - A stage without ``viewports`` gets ``rows * columns`` empty viewports.

    Per-viewport option defaulting is handled by the models themselves.

    Args:
        protocol (Protocol): The protocol to complete.

    Returns:
        Protocol: The same protocol instance.
    """
    protocol.id = protocol.id or protocol.name
    protocol.name = protocol.name or protocol.id

    for stage in protocol.stages:
        if stage.viewports is not None:
            continue
        structure = stage.viewport_structure
        if structure is None or structure.properties is None:
            logger.warning(f"Protocol '{protocol.id}' has a stage without viewportStructure.properties; "
                           "viewports cannot be generated.")
            continue
        properties = structure.properties
        stage.viewports = [ViewportSpec() for _ in range(properties.rows * properties.columns)]

    return protocol
