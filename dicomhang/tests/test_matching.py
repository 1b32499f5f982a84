"""Tests for rule aggregation and protocol selection."""

import pytest

from dicomhang.errors import NoProtocolAvailableError
from dicomhang.matching import MatchEngine
from dicomhang.models import Rule, parse_protocol
from dicomhang.tests.fixtures.factory import make_display_set, make_protocol, make_rule, make_study


def rules(*definitions):
    return [Rule.model_validate(definition) for definition in definitions]


@pytest.fixture
def engine():
    return MatchEngine()


@pytest.fixture
def ct_study():
    display_sets = [make_display_set("1.2.3", "1.2.3.1", 1, "CT"), make_display_set("1.2.3", "1.2.3.2", 2, "PT")]
    return make_study("1.2.3", display_sets, StudyDescription="CT CHEST")


class TestFindMatch:

    def test_sums_weights_of_passing_rules(self, engine, ct_study):
        result = engine.find_match(ct_study, rules(
            make_rule("ModalitiesInStudy", "contains", "CT", weight=2),
            make_rule("StudyDescription", "contains", "CHEST", weight=3),
            make_rule("StudyDescription", "contains", "HEAD", weight=5),
        ))
        assert result.score == 5
        assert result.required_failed is False
        assert len(result.details.passed) == 2
        assert len(result.details.failed) == 1

    def test_required_failure_is_flagged(self, engine, ct_study):
        result = engine.find_match(ct_study, rules(
            make_rule("StudyDescription", "contains", "CHEST", weight=3),
            make_rule("ModalitiesInStudy", "contains", "MR", required=True),
        ))
        assert result.required_failed is True
        assert result.score == 3

    def test_no_rules_scores_zero(self, engine, ct_study):
        result = engine.find_match(ct_study, [])
        assert result.score == 0
        assert result.required_failed is False


class TestSelectProtocol:

    def test_no_protocols_raises(self, engine, ct_study):
        with pytest.raises(NoProtocolAvailableError):
            engine.select_protocol([], [ct_study])

    def test_highest_score_wins(self, engine, ct_study):
        low = parse_protocol(make_protocol("low", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "CT", weight=1)]))
        high = parse_protocol(make_protocol("high", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "CT", weight=1),
            make_rule("StudyDescription", "contains", "CHEST", weight=2)]))
        assert engine.select_protocol([low, high], [ct_study]).id == "high"

    def test_ties_keep_registration_order(self, engine, ct_study):
        first = parse_protocol(make_protocol("first", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "CT", weight=2)]))
        second = parse_protocol(make_protocol("second", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "PT", weight=2)]))
        assert engine.select_protocol([first, second], [ct_study]).id == "first"
        assert engine.select_protocol([second, first], [ct_study]).id == "second"

    def test_required_failure_excludes_protocol(self, engine, ct_study):
        mr = parse_protocol(make_protocol("mr", protocolMatchingRules=[
            make_rule("StudyDescription", "contains", "CHEST", weight=10),
            make_rule("ModalitiesInStudy", "contains", "MR", required=True)]))
        ct = parse_protocol(make_protocol("ct", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "CT")]))
        assert engine.select_protocol([mr, ct], [ct_study]).id == "ct"

    def test_falls_back_to_default_protocol(self, engine, ct_study):
        mr = parse_protocol(make_protocol("mr", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "MR")]))
        default = parse_protocol(make_protocol("default"))
        assert engine.select_protocol([mr, default], [ct_study]).id == "default"

    def test_falls_back_to_first_protocol_without_default(self, engine, ct_study):
        mr = parse_protocol(make_protocol("mr", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "MR")]))
        no_rules = parse_protocol(make_protocol("noRules"))
        assert engine.select_protocol([mr, no_rules], [ct_study]).id == "mr"

    def test_active_study_is_scored(self, engine, ct_study):
        mr_study = make_study("9.9", [make_display_set("9.9", "9.9.1", 1, "MR")])
        mr = parse_protocol(make_protocol("mr", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "MR")]))
        ct = parse_protocol(make_protocol("ct", protocolMatchingRules=[
            make_rule("ModalitiesInStudy", "contains", "CT")]))
        assert engine.select_protocol([ct, mr], [ct_study, mr_study]).id == "ct"
        assert engine.select_protocol([ct, mr], [ct_study, mr_study], active_study=mr_study).id == "mr"


if __name__ == "__main__":
    pytest.main(["-v", __file__])
