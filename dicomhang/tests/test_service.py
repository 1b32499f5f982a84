"""Tests for the hanging protocol service: running, stage navigation, events and state."""

import logging

import pytest

from dicomhang.config import EVENTS
from dicomhang.errors import NoProtocolAvailableError, ProtocolValidationError
from dicomhang.extensions import ExtensionRegistry, ImageLoadStrategy
from dicomhang.models import Protocol
from dicomhang.service import HangingProtocolService
from dicomhang.tests.fixtures.factory import make_display_set, make_protocol, make_rule, make_study


@pytest.fixture
def session():
    display_sets = [
        make_display_set("1.2.3", "1.2.3.1", 1, "CT", num_images=50),
        make_display_set("1.2.3", "1.2.3.2", 2, "CT", num_images=50),
        make_display_set("1.2.3", "1.2.3.3", 3, "PT", num_images=50),
    ]
    return [make_study("1.2.3", display_sets)], display_sets


@pytest.fixture
def service():
    return HangingProtocolService()


@pytest.fixture
def events(service):
    received = []
    for event_name in (EVENTS["NEW_LAYOUT"], EVENTS["STAGE_CHANGE"]):
        service.subscribe(event_name, lambda data, name=event_name: received.append((name, data)))
    return received


def two_stage_protocol(protocol_id="twoStage"):
    protocol = make_protocol(protocol_id, rows=1, columns=2, viewports=[
        {"viewportOptions": {}, "displaySets": [{"id": "ctSet"}]},
        {"viewportOptions": {}, "displaySets": [{"id": "ctSet", "displaySetIndex": 1}]},
    ], num_stages=2)
    protocol["stages"][1]["viewportStructure"]["properties"] = {"rows": 2, "columns": 1}
    return protocol


class TestRun:

    def test_run_without_protocol_selects_best(self, service, session):
        studies, display_sets = session
        service.add_protocols([
            make_protocol("mr", protocolMatchingRules=[make_rule("ModalitiesInStudy", "contains", "MR")]),
            make_protocol("ct", protocolMatchingRules=[make_rule("ModalitiesInStudy", "contains", "CT")]),
        ])

        applied = service.run(studies, display_sets)

        assert applied.id == "ct"
        assert service.get_active_protocol() is applied
        assert service.get_current_stage() == 0

    def test_run_without_registered_protocols_raises(self, service, session):
        with pytest.raises(NoProtocolAvailableError):
            service.run(*session)

    def test_run_with_explicit_protocol_skips_selection(self, service, session):
        studies, display_sets = session
        service.add_protocols([make_protocol("ct", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "CT", weight=10)])])

        applied = service.run(studies, display_sets, protocol=make_protocol("explicit"))

        assert applied.id == "explicit"
        assert [p.id for p in service.get_protocols()] == ["ct"]

    def test_run_with_protocol_model(self, service, session):
        protocol = Protocol.model_validate(make_protocol("model"))
        assert service.run(*session, protocol=protocol) is protocol

    def test_run_with_protocol_without_id_selects(self, service, session):
        service.add_protocols([make_protocol("default")])
        applied = service.run(*session, protocol=make_protocol(None))
        assert applied.id == "default"

    def test_run_populates_state(self, service, session):
        service.run(*session, protocol=two_stage_protocol())

        match_details, hp_already_applied = service.get_state()

        assert len(match_details) == 2
        assert [d.series_instance_uid for d in match_details[0].display_sets_info] == ["1.2.3.1"]
        assert [d.series_instance_uid for d in match_details[1].display_sets_info] == ["1.2.3.2"]
        assert hp_already_applied == [False, False]
        best = service.get_display_sets_match_details()["ctSet"]
        assert [c.series_instance_uid for c in best.matching_scores] == ["1.2.3.1", "1.2.3.2"]

    def test_run_with_invalid_protocol_raises(self, service, session):
        with pytest.raises(ProtocolValidationError):
            service.run(*session, protocol={"id": "broken", "stages": "not a list"})

    def test_unmatched_rule_set_leaves_viewport_empty(self, service, session, caplog):
        protocol = make_protocol("mr", display_sets=[
            {"id": "mrSet", "seriesMatchingRules": [make_rule("Modality", value="MR", required=True)]},
        ], viewports=[{"viewportOptions": {}, "displaySets": [{"id": "mrSet"}]}])

        with caplog.at_level(logging.WARNING):
            service.run(*session, protocol=protocol)

        match_details, _ = service.get_state()
        assert service.get_display_sets_match_details() == {"mrSet": None}
        assert match_details[0].display_sets_info == []
        assert "mrSet" in caplog.text

    def test_auto_generated_viewports(self, service, session):
        service.run(*session, protocol=make_protocol("auto", rows=1, columns=2, viewports="auto"))

        match_details, hp_already_applied = service.get_state()

        assert len(match_details) == 2
        assert all(m.viewport_options == {} and m.display_sets_info == [] for m in match_details)
        assert hp_already_applied == [False, False]

    def test_rerun_rebuilds_state(self, service, session):
        service.run(*session, protocol=two_stage_protocol())
        service.set_hanging_protocol_applied_for_viewport(0)

        service.run(*session, protocol=make_protocol("single"))

        match_details, hp_already_applied = service.get_state()
        assert len(match_details) == 1
        assert hp_already_applied == [False]
        assert list(service.get_display_sets_match_details()) == ["ctSet"]

    def test_rerun_is_deterministic(self, service, session):
        service.run(*session, protocol=two_stage_protocol())
        first = [m.model_dump() for m in service.get_state()[0]]
        service.run(*session, protocol=two_stage_protocol())
        assert [m.model_dump() for m in service.get_state()[0]] == first


class TestStageNavigation:

    def test_next_and_previous(self, service, session):
        service.run(*session, protocol=two_stage_protocol())

        assert service.next_stage() is True
        assert service.get_current_stage() == 1
        assert service.previous_stage() is True
        assert service.get_current_stage() == 0

    def test_navigation_out_of_bounds_changes_nothing(self, service, session, events):
        service.run(*session, protocol=two_stage_protocol())
        service.set_hanging_protocol_applied_for_viewport(1)
        events.clear()

        assert service.previous_stage() is False
        assert service.get_current_stage() == 0
        assert service.get_state()[1] == [False, True]
        assert events == []

        assert service.next_stage() is True
        assert service.next_stage() is False
        assert service.get_current_stage() == 1
        assert [name for name, _ in events] == [EVENTS["NEW_LAYOUT"], EVENTS["STAGE_CHANGE"]]

    def test_navigation_without_protocol(self, service):
        assert service.next_stage() is False
        assert service.previous_stage() is False
        assert service.get_num_stages() is None

    def test_run_emits_new_layout_only(self, service, session, events):
        service.run(*session, protocol=two_stage_protocol())

        assert events == [(EVENTS["NEW_LAYOUT"], {
            "layoutType": "grid", "numRows": 1, "numCols": 2, "layoutOptions": [],
        })]

    def test_stage_change_payload(self, service, session, events):
        service.run(*session, protocol=two_stage_protocol())
        events.clear()

        service.next_stage()

        assert [name for name, _ in events] == [EVENTS["NEW_LAYOUT"], EVENTS["STAGE_CHANGE"]]
        assert events[0][1]["numRows"] == 2
        assert events[0][1]["numCols"] == 1
        payload = events[1][1]
        match_details, hp_already_applied = service.get_state()
        assert payload["matchDetails"] == match_details
        assert payload["hpAlreadyApplied"] == hp_already_applied == [False, False]

    def test_incomplete_stage_is_reported_and_left_empty(self, service, session, events, caplog):
        protocol = two_stage_protocol()
        del protocol["stages"][1]["displaySets"]
        service.run(*session, protocol=protocol)
        events.clear()

        with caplog.at_level(logging.WARNING):
            assert service.next_stage() is True

        assert service.get_state() == ([], [])
        assert service.get_display_sets_match_details() == {}
        assert "cannot be applied" in caplog.text
        assert [name for name, _ in events] == [EVENTS["STAGE_CHANGE"]]

    def test_stage_without_layout_properties(self, service, session, events, caplog):
        protocol = make_protocol("noLayout")
        protocol["stages"][0]["viewportStructure"] = {"type": "grid"}

        with caplog.at_level(logging.WARNING):
            service.run(*session, protocol=protocol)

        assert events == []
        assert service.get_state() == ([], [])
        assert "viewportStructure.properties" in caplog.text

    def test_protocol_without_stages(self, service, session, events):
        service.run(*session, protocol={"id": "empty", "stages": []})
        assert service.get_num_stages() is None
        assert service.get_state() == ([], [])
        assert events == []


class TestProtocolsAndState:

    def test_add_protocols_dedupes_by_identity(self, service):
        protocol = make_protocol("ct")
        same_id = make_protocol("ct")

        service.add_protocols([protocol, protocol])
        service.add_protocols([protocol, same_id])

        assert [p.id for p in service.get_protocols()] == ["ct", "ct"]

    def test_add_protocol_models_dedupe(self, service):
        protocol = Protocol.model_validate(make_protocol("ct"))
        service.add_protocols([protocol])
        service.add_protocols([protocol])
        assert service.get_protocols() == [protocol]

    def test_add_protocols_fills_defaults(self, service):
        service.add_protocols([make_protocol(None, name="Named only", rows=2, columns=2, viewports="auto")])
        protocol = service.get_protocols()[0]
        assert protocol.id == "Named only"
        assert len(protocol.stages[0].viewports) == 4

    def test_set_hanging_protocol_applied_for_viewport(self, service, session):
        service.run(*session, protocol=two_stage_protocol())
        service.set_hanging_protocol_applied_for_viewport(1)
        service.set_hanging_protocol_applied_for_viewport(3)
        assert service.get_state()[1] == [False, True, False, True]

    def test_reset_keeps_extensions(self, service, session):
        service.add_custom_attribute("answer", "Answer", lambda subject, context: 42)
        service.add_protocols([make_protocol("ct")])
        service.run(*session)

        service.reset()

        assert service.get_protocols() == []
        assert service.get_active_protocol() is None
        assert service.get_state() == ([], [])
        assert "answer" in service.extensions.custom_attributes

    def test_independent_services_do_not_share_state(self, session):
        first, second = HangingProtocolService(), HangingProtocolService()
        first.add_protocols([make_protocol("ct")])
        first.run(*session)
        assert second.get_protocols() == []
        assert second.get_state() == ([], [])

    def test_custom_attribute_drives_matching(self, service, session):
        service.add_custom_attribute(
            "isFirstSeries", "Is first series",
            lambda subject, context: subject.get("SeriesNumber") == 1,
        )
        protocol = make_protocol("custom", display_sets=[{"id": "first", "seriesMatchingRules": [
            make_rule("isFirstSeries", value=True, required=True)]}],
            viewports=[{"displaySets": [{"id": "first"}]}])

        service.run(*session, protocol=protocol)

        assert service.get_display_sets_match_details()["first"].series_instance_uid == "1.2.3.1"

    def test_failing_custom_attribute_fails_rule_only(self, service, session, caplog):
        def broken(subject, context):
            raise ValueError("no timepoint")

        service.add_custom_attribute("timepoint", "Timepoint", broken)
        protocol = make_protocol("timepoint", display_sets=[{"id": "ctSet", "seriesMatchingRules": [
            make_rule("Modality", value="CT", required=True),
            make_rule("timepoint", value="baseline", weight=2)]}])

        with caplog.at_level(logging.WARNING):
            service.run(*session, protocol=protocol)

        best = service.get_display_sets_match_details()["ctSet"]
        assert best.series_instance_uid == "1.2.3.1"
        assert best.matching_score == 1
        assert [r.rule.attribute for r in best.match_details.failed] == ["timepoint"]
        assert "timepoint" in caplog.text


class RecordingStrategy(ImageLoadStrategy):

    def __init__(self, result):
        self.result = result
        self.requests = []

    def load(self, request):
        self.requests.append(request)
        return self.result


class TestImageLoadStrategy:

    def test_protocol_activates_registered_strategy(self, service, session):
        strategy = RecordingStrategy({"reordered": True})
        assert service.register_image_load_strategy("interleave", strategy) is True
        received = []
        service.subscribe(EVENTS["CUSTOM_IMAGE_LOAD_PERFORMED"], received.append)

        service.run(*session, protocol=make_protocol("ct", imageLoadStrategy="interleave"))
        assert service.has_custom_image_load_strategy()
        assert service.get_custom_image_load_performed() is False

        result = service.run_image_load_strategy({"viewportId": "vp1"})

        assert result == {"reordered": True}
        assert received == [{"reordered": True}]
        assert service.get_custom_image_load_performed() is True
        request = strategy.requests[0]
        assert request.data == {"viewportId": "vp1"}
        assert request.display_sets_match_details is service.get_display_sets_match_details()

    def test_falsy_result_does_not_broadcast(self, service, session):
        service.register_image_load_strategy("noop", lambda request: None)
        received = []
        service.subscribe(EVENTS["CUSTOM_IMAGE_LOAD_PERFORMED"], received.append)
        service.run(*session, protocol=make_protocol("ct", imageLoadStrategy="noop"))

        assert service.run_image_load_strategy({}) is None
        assert received == []
        assert service.get_custom_image_load_performed() is False

    def test_stage_change_resets_performed_flag(self, service, session):
        service.register_image_load_strategy("interleave", lambda request: True)
        protocol = two_stage_protocol()
        protocol["imageLoadStrategy"] = "interleave"
        service.run(*session, protocol=protocol)
        service.run_image_load_strategy({})

        service.next_stage()

        assert service.get_custom_image_load_performed() is False

    def test_unregistered_strategy_is_not_activated(self, service, session, caplog):
        with caplog.at_level(logging.WARNING):
            service.run(*session, protocol=make_protocol("ct", imageLoadStrategy="missing"))
        assert service.has_custom_image_load_strategy() is False
        assert service.run_image_load_strategy({}) is None
        assert "missing" in caplog.text

    def test_shared_registry(self, session):
        registry = ExtensionRegistry()
        registry.register_image_load_strategy("interleave", lambda request: True)
        service = HangingProtocolService(extensions=registry)
        service.run(*session, protocol=make_protocol("ct", imageLoadStrategy="interleave"))
        assert registry.get_active_image_load_strategy() is not None


if __name__ == "__main__":
    pytest.main(["-v", __file__])
