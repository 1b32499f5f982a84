"""
The hanging protocol service.

`HangingProtocolService` owns the registered protocols and the state of the
current hanging: which protocol is applied, which stage is shown, the best
match per display-set rule set and the display sets bound to each viewport.
Every stage (re)evaluation rebuilds that state from scratch and broadcasts
``NEW_LAYOUT``; stage navigation additionally broadcasts ``STAGE_CHANGE``.

Example::

    service = HangingProtocolService()
    service.subscribe(service.EVENTS["STAGE_CHANGE"], on_stage_change)
    service.add_protocols(load_all_bundled_protocols().values())
    service.run(studies, display_sets)
    match_details, hp_already_applied = service.get_state()
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .config import EVENTS
from .extensions import ExtensionRegistry, ImageLoadRequest
from .matching import MatchEngine
from .models import CandidateMatch, Protocol, Stage, ViewportMatch, parse_protocol, validate_protocol
from .pubsub import PubSubService, Subscription
from .stage import bind_viewport, match_stage

logger = logging.getLogger(__name__)


@dataclass
class HangingState:
    studies: List[Any] = field(default_factory=list)
    display_sets: List[Any] = field(default_factory=list)
    active_study: Any = None
    protocol: Optional[Protocol] = None
    stage: Optional[int] = None
    match_details: List[ViewportMatch] = field(default_factory=list)
    display_set_match_details: Dict[str, Optional[CandidateMatch]] = field(default_factory=dict)
    hp_already_applied: List[bool] = field(default_factory=list)
    custom_image_load_performed: bool = False


def _protocol_id(protocol: Union[Protocol, Mapping[str, Any], None]) -> Optional[str]:
    if protocol is None:
        return None
    if isinstance(protocol, Protocol):
        return protocol.id
    return protocol.get("id")


class HangingProtocolService:

    EVENTS = EVENTS

    def __init__(
        self,
        extensions: Optional[ExtensionRegistry] = None,
        pubsub: Optional[PubSubService] = None
    ):
        self.extensions = extensions or ExtensionRegistry()
        self.pubsub = pubsub or PubSubService(EVENTS)
        self.engine = MatchEngine(self.extensions.get_attribute_resolver())
        self.protocols: List[Protocol] = []
        self._protocol_sources: List[Any] = []
        self.state = HangingState()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event_name: str, callback: Callable[[Any], None]) -> Subscription:
        return self.pubsub.subscribe(event_name, callback)

    def unsubscribe(self, event_name: str, listener_id: str) -> bool:
        return self.pubsub.unsubscribe(event_name, listener_id)

    def _broadcast_change(self, event_name: str, event_data: Any) -> None:
        self.pubsub.broadcast_event(event_name, event_data)

    # ------------------------------------------------------------------
    # Protocols and state
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Forget protocols and all per-run state. Extensions are kept."""
        self.protocols = []
        self._protocol_sources = []
        self.state = HangingState()

    def get_protocols(self) -> List[Protocol]:
        return self.protocols

    def add_protocols(self, protocols: Iterable[Union[Protocol, Mapping[str, Any]]]) -> None:
        """
        Register protocols after structural validation.

        A protocol object that is already registered (by identity) is skipped;
        protocols are not deduplicated by id.

        Args:
            protocols (Iterable[Union[Protocol, Mapping[str, Any]]]): Models or mappings.

        Raises:
            ProtocolValidationError: If a mapping cannot be parsed into a protocol.
        """
        for protocol in protocols:
            if any(protocol is known for known in self._protocol_sources + self.protocols):
                continue
            self.protocols.append(validate_protocol(parse_protocol(protocol)))
            self._protocol_sources.append(protocol)

    def get_state(self) -> Tuple[List[ViewportMatch], List[bool]]:
        return self.state.match_details, self.state.hp_already_applied

    def get_display_sets_match_details(self) -> Dict[str, Optional[CandidateMatch]]:
        return self.state.display_set_match_details

    def get_active_protocol(self) -> Optional[Protocol]:
        return self.state.protocol

    def get_current_stage(self) -> Optional[int]:
        return self.state.stage

    def get_num_stages(self) -> Optional[int]:
        """Number of stages of the applied protocol, or None without a protocol or stages."""
        protocol = self.state.protocol
        if protocol is None or not protocol.stages:
            return None
        return len(protocol.stages)

    def set_hanging_protocol_applied_for_viewport(self, viewport_index: int) -> None:
        applied = self.state.hp_already_applied
        if viewport_index >= len(applied):
            applied.extend([False] * (viewport_index + 1 - len(applied)))
        applied[viewport_index] = True

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(
        self,
        studies: Sequence[Any],
        display_sets: Sequence[Any],
        active_study: Any = None,
        protocol: Union[Protocol, Mapping[str, Any], None] = None
    ) -> Protocol:
        """
        Hang the given studies.

        Args:
            studies (Sequence[Any]): Studies to hang.
            display_sets (Sequence[Any]): Display sets of those studies.
            active_study (Any): The primary study; defaults to the first study.
            protocol (Union[Protocol, Mapping[str, Any], None]): A specific protocol to apply.
                When omitted, or when it has no id, the best registered protocol is selected.

        Returns:
            Protocol: The applied protocol.

        Raises:
            NoProtocolAvailableError: If a protocol must be selected but none is registered.
        """
        self.state.studies = list(studies)
        self.state.display_sets = list(display_sets or [])
        self.state.active_study = active_study if active_study is not None else (
            self.state.studies[0] if self.state.studies else None
        )

        if _protocol_id(protocol) is None:
            selected = self.engine.select_protocol(
                self.protocols,
                self.state.studies,
                active_study=active_study,
                display_sets=self.state.display_sets,
            )
        elif isinstance(protocol, Protocol):
            selected = protocol
        else:
            selected = validate_protocol(parse_protocol(protocol))

        self._set_protocol(selected)
        return selected

    def _set_protocol(self, protocol: Protocol) -> None:
        self.state.stage = 0
        self.state.protocol = protocol
        if protocol.image_load_strategy:
            self.extensions.set_active_image_load_strategy(protocol.image_load_strategy)
        logger.info(f"Applying hanging protocol '{protocol.id}'")
        self._update_viewports()

    def _get_current_stage_model(self) -> Optional[Stage]:
        protocol = self.state.protocol
        if protocol is None or self.state.stage is None or self.state.stage >= len(protocol.stages):
            return None
        return protocol.stages[self.state.stage]

    def _update_viewports(self) -> None:
        """Re-evaluate the current stage: layout, display set matches, viewport bindings."""
        state = self.state
        state.display_set_match_details = {}
        state.match_details = []
        state.hp_already_applied = []

        if not self.get_num_stages():
            logger.info("No protocol stages - nothing to display")
            return

        stage = self._get_current_stage_model()
        if (
            stage is None
            or stage.viewport_structure is None
            or not stage.viewports
            or stage.display_sets is None
        ):
            logger.warning(f"Stage {state.stage} of protocol '{state.protocol.id}' cannot be applied")
            return

        state.custom_image_load_performed = False
        layout_props = stage.viewport_structure.properties
        if layout_props is None:
            logger.warning(f"No viewportStructure.properties in stage {state.stage} of '{state.protocol.id}'")
            return

        self._broadcast_change(EVENTS["NEW_LAYOUT"], {
            "layoutType": stage.viewport_structure.type,
            "numRows": layout_props.rows,
            "numCols": layout_props.columns,
            "layoutOptions": layout_props.layout_options,
        })

        state.display_set_match_details = match_stage(stage, state.studies, state.display_sets, self.engine)
        state.match_details = [
            bind_viewport(viewport, state.display_set_match_details, viewport_index)
            for viewport_index, viewport in enumerate(stage.viewports)
        ]
        state.hp_already_applied = [False] * len(stage.viewports)

    # ------------------------------------------------------------------
    # Stage navigation
    # ------------------------------------------------------------------

    def next_stage(self) -> bool:
        """Switch to the next stage. Returns False, changing nothing, at the last stage."""
        if not self._set_current_protocol_stage(1):
            logger.info("next_stage failed")
            return False
        return True

    def previous_stage(self) -> bool:
        """Switch to the previous stage. Returns False, changing nothing, at stage 0."""
        if not self._set_current_protocol_stage(-1):
            logger.info("previous_stage failed")
            return False
        return True

    def _set_current_protocol_stage(self, stage_action: int) -> bool:
        num_stages = self.get_num_stages()
        if not num_stages or self.state.stage is None:
            return False

        new_stage = self.state.stage + stage_action
        if not 0 <= new_stage < num_stages:
            return False

        self.state.hp_already_applied = []
        self.state.stage = new_stage
        logger.info(f"Hanging protocol stage = {new_stage}")

        self._update_viewports()

        self._broadcast_change(EVENTS["STAGE_CHANGE"], {
            "matchDetails": self.state.match_details,
            "hpAlreadyApplied": self.state.hp_already_applied,
        })
        return True

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    def add_custom_attribute(self, attribute_id, attribute_name, callback, options=None) -> None:
        self.extensions.add_custom_attribute(attribute_id, attribute_name, callback, options)

    def add_custom_viewport_option(self, option_id, name, callback=None, store=None, options=None) -> None:
        self.extensions.add_custom_viewport_option(option_id, name, callback, store, options)

    def apply_custom_viewport_options(self, viewport_options, viewport, *args) -> None:
        self.extensions.apply_custom_viewport_options(viewport_options, viewport, *args)

    def apply_custom_viewport_store(self, viewport_options, prior_viewport_options, *args) -> None:
        self.extensions.apply_custom_viewport_store(viewport_options, prior_viewport_options, *args)

    def register_image_load_strategy(self, name, strategy) -> bool:
        return self.extensions.register_image_load_strategy(name, strategy)

    def has_custom_image_load_strategy(self) -> bool:
        return self.extensions.has_active_image_load_strategy()

    def get_custom_image_load_performed(self) -> bool:
        return self.state.custom_image_load_performed

    def run_image_load_strategy(self, data: Any) -> Any:
        """
        Run the active image-load strategy for the current hanging.

        If the strategy returns a truthy result, it is broadcast as
        ``CUSTOM_IMAGE_LOAD_PERFORMED`` and the performed flag is set.

        Returns:
            Any: The strategy result, or None without an active strategy.
        """
        strategy = self.extensions.get_active_image_load_strategy()
        if strategy is None:
            logger.debug("No active image load strategy")
            return None

        loaded_data = strategy.load(ImageLoadRequest(
            data=data,
            display_sets_match_details=self.state.display_set_match_details,
            match_details=self.state.match_details,
        ))
        if not loaded_data:
            return loaded_data

        self.state.custom_image_load_performed = True
        self._broadcast_change(EVENTS["CUSTOM_IMAGE_LOAD_PERFORMED"], loaded_data)
        return loaded_data
