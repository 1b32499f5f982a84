"""
Stage matching and viewport binding.

For each display-set rule set of a stage, every (study, display set) pair is
scored with the rule set's study and series rules. Pairs that pass all
required rules are ranked; the best one is recorded for the rule set together
with the full ranking. Viewports then pick their display sets from these
rankings, either the best match or the Nth alternative.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .attributes import get_value
from .config import SORT_ORDER
from .matching import MatchEngine
from .models import (
    CandidateMatch, DisplaySetInfo, DisplaySetRuleSet, MatchDetails, SortingInfo, Stage,
    ViewportMatch, ViewportSpec
)

logger = logging.getLogger(__name__)


def parse_series_number(value: Any) -> Optional[int]:
    """Integer part of a SeriesNumber, or None when it is missing or not numeric."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def rank_candidates(candidates: List[CandidateMatch]) -> List[CandidateMatch]:
    """
    Sort candidates by score (descending), study UID (descending) and series
    number (ascending, missing last). The sort is stable.

    Args:
        candidates (List[CandidateMatch]): Unsorted candidates.

    Returns:
        List[CandidateMatch]: A new, sorted list.
    """
    if not candidates:
        return []

    sorting_df = pd.DataFrame([
        {"position": position, **candidate.sorting_info.model_dump()}
        for position, candidate in enumerate(candidates)
    ])
    sorting_df["series"] = pd.to_numeric(sorting_df["series"], errors="coerce")
    sorting_df = sorting_df.sort_values(
        by=[key for key, _ in SORT_ORDER],
        ascending=[ascending for _, ascending in SORT_ORDER],
        kind="mergesort",
        na_position="last",
    )
    return [candidates[position] for position in sorting_df["position"].tolist()]


def match_display_sets(
    rule_set: DisplaySetRuleSet,
    studies: Sequence[Any],
    display_sets: Sequence[Any],
    engine: MatchEngine
) -> Tuple[Optional[CandidateMatch], List[CandidateMatch]]:
    """
    Match one display-set rule set against all studies and display sets.

    Args:
        rule_set (DisplaySetRuleSet): The rule set declared by the stage.
        studies (Sequence[Any]): Studies being hung.
        display_sets (Sequence[Any]): Display sets of those studies.
        engine (MatchEngine): Engine used to score rules.

    Returns:
        Tuple[Optional[CandidateMatch], List[CandidateMatch]]:
            - The best match (carrying the ranking in ``matching_scores``), or None.
            - All surviving candidates, ranked.
    """
    candidates = []
    study_context = {"studies": list(studies), "displaySets": list(display_sets)}

    for study in studies:
        study_match = engine.find_match(study, rule_set.study_matching_rules, study_context)
        if study_match.required_failed:
            continue

        study_uid = get_value(study, "StudyInstanceUID")
        for display_set in display_sets:
            if get_value(display_set, "StudyInstanceUID") != study_uid:
                continue

            images = get_value(display_set, "images")
            series_match = engine.find_match(
                display_set,
                rule_set.series_matching_rules,
                {"studies": list(studies), "instance": images[0] if images else None}
            )
            if series_match.required_failed:
                continue

            total_score = series_match.score + study_match.score
            candidates.append(CandidateMatch(
                study_instance_uid=get_value(display_set, "StudyInstanceUID"),
                series_instance_uid=get_value(display_set, "SeriesInstanceUID"),
                display_set_instance_uid=get_value(display_set, "displaySetInstanceUID"),
                matching_score=total_score,
                match_details=MatchDetails(
                    passed=series_match.details.passed + study_match.details.passed,
                    failed=series_match.details.failed + study_match.details.failed,
                ),
                sorting_info=SortingInfo(
                    score=total_score,
                    study=study_uid,
                    series=parse_series_number(get_value(display_set, "SeriesNumber")),
                ),
            ))

    ranked = rank_candidates(candidates)
    if not ranked:
        logger.info(f"No match found for display set rule set '{rule_set.id}'")
        return None, []

    best_match = ranked[0].model_copy(update={"matching_scores": ranked})
    return best_match, ranked


def match_stage(
    stage: Stage,
    studies: Sequence[Any],
    display_sets: Sequence[Any],
    engine: MatchEngine
) -> Dict[str, Optional[CandidateMatch]]:
    """
    Match every display-set rule set of a stage.

    Returns:
        Dict[str, Optional[CandidateMatch]]: Rule set id to best match (None when no
            candidate survived). Built from scratch on every call.
    """
    display_set_match_details = {}
    for rule_set in stage.display_sets or []:
        best_match, _ = match_display_sets(rule_set, studies, display_sets, engine)
        display_set_match_details[rule_set.id] = best_match
    return display_set_match_details


def bind_viewport(
    viewport: ViewportSpec,
    display_set_match_details: Dict[str, Optional[CandidateMatch]],
    viewport_index: Optional[int] = None
) -> ViewportMatch:
    """
    Resolve a viewport's display set references to concrete display sets.

    ``displaySetIndex`` 0 selects the best match of the referenced rule set;
    N > 0 selects the Nth entry of its ranking. References without a match at
    that position are skipped with a warning, so a viewport may end up with
    fewer display sets than it declares.

    Args:
        viewport (ViewportSpec): The viewport declaration.
        display_set_match_details (Dict[str, Optional[CandidateMatch]]): Output of `match_stage`.
        viewport_index (Optional[int]): Position of the viewport, for diagnostics.

    Returns:
        ViewportMatch: The viewport options and the resolved display sets.
    """
    display_sets_info = []
    for reference in viewport.display_sets:
        best_match = display_set_match_details.get(reference.id)
        index = reference.display_set_index

        if best_match is None or index == 0:
            match = best_match
        elif 0 < index < len(best_match.matching_scores):
            match = best_match.matching_scores[index]
        else:
            match = None

        if match is None:
            logger.warning(
                f"Viewport {viewport_index} requests display set '{reference.id}' "
                f"(index {index}), which is not matched by the provided criteria."
            )
            continue

        display_sets_info.append(DisplaySetInfo(
            series_instance_uid=match.series_instance_uid,
            display_set_instance_uid=match.display_set_instance_uid,
            display_set_options=reference.options,
        ))

    return ViewportMatch(viewport_options=viewport.viewport_options, display_sets_info=display_sets_info)
