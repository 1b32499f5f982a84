"""
Hang command: apply hanging protocols to a DICOM session.

Loads the session, registers bundled and/or user protocols, runs the hanging
protocol service and prints which display set lands in which viewport.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from tabulate import tabulate

from dicomhang.io import build_study_set, load_dicom_session, load_protocols
from dicomhang.models import CandidateMatch, ViewportMatch
from dicomhang.service import HangingProtocolService

logger = logging.getLogger(__name__)


def format_viewport_table(match_details: List[ViewportMatch], display_sets: List[Dict[str, Any]]) -> str:
    """
    Render the per-viewport assignment as a table.

    Args:
        match_details (List[ViewportMatch]): Viewport bindings from the service state.
        display_sets (List[Dict[str, Any]]): Display sets, used to show descriptions.

    Returns:
        str: The table text.
    """
    by_uid = {ds.get("displaySetInstanceUID"): ds for ds in display_sets}
    rows = []
    for viewport_index, viewport in enumerate(match_details):
        if not viewport.display_sets_info:
            rows.append([viewport_index, "-", "-", "-"])
            continue
        for info in viewport.display_sets_info:
            display_set = by_uid.get(info.display_set_instance_uid, {})
            rows.append([
                viewport_index,
                display_set.get("SeriesNumber", ""),
                display_set.get("SeriesDescription", ""),
                info.series_instance_uid,
            ])
    return tabulate(rows, headers=["Viewport", "Series #", "Description", "SeriesInstanceUID"], tablefmt="simple")


def format_ranking_table(display_set_match_details: Dict[str, Optional[CandidateMatch]]) -> str:
    rows = []
    for rule_set_id, best_match in display_set_match_details.items():
        if best_match is None:
            rows.append([rule_set_id, "-", "-", "-", "no match"])
            continue
        for rank, candidate in enumerate(best_match.matching_scores):
            failed = ", ".join(r.rule.attribute for r in candidate.match_details.failed)
            rows.append([rule_set_id, rank, candidate.matching_score, candidate.series_instance_uid, failed])
    return tabulate(rows, headers=["Rule set", "Rank", "Score", "SeriesInstanceUID", "Failed rules"], tablefmt="simple")


def build_report(service: HangingProtocolService) -> Dict[str, Any]:
    match_details, hp_already_applied = service.get_state()
    protocol = service.get_active_protocol()
    return {
        "protocol": protocol.id if protocol else None,
        "stage": service.get_current_stage(),
        "matchDetails": [viewport.model_dump(by_alias=True) for viewport in match_details],
        "displaySetMatchDetails": {
            rule_set_id: best_match.model_dump(by_alias=True) if best_match else None
            for rule_set_id, best_match in service.get_display_sets_match_details().items()
        },
        "hpAlreadyApplied": hp_already_applied,
    }


def hang_command(args) -> int:
    """
    Hang a DICOM session and print the viewport assignment.

    Returns:
        int: Process exit code.
    """
    logger.info(f"Loading DICOM session from {args.dicoms}...")
    session_df = load_dicom_session(session_dir=args.dicoms)
    studies, display_sets = build_study_set(session_df)

    service = HangingProtocolService()

    if args.library:
        from dicomhang.protocols import load_all_bundled_protocols
        service.add_protocols(load_all_bundled_protocols().values())

    if args.protocols:
        service.add_protocols(load_protocols(args.protocols).values())

    if not service.get_protocols():
        logger.error("No protocols loaded. Use --library for bundled protocols or --protocols <path>.")
        return 1

    protocol = None
    if args.protocol_id:
        protocol = next((p for p in service.get_protocols() if p.id == args.protocol_id), None)
        if protocol is None:
            logger.error(f"Protocol '{args.protocol_id}' is not loaded.")
            return 1

    applied = service.run(studies, display_sets, protocol=protocol)
    logger.info(f"Applied protocol '{applied.id}' ({len(applied.stages)} stage(s))")

    for _ in range(args.stage):
        if not service.next_stage():
            logger.warning(f"Protocol '{applied.id}' has no stage {args.stage}; showing stage {service.get_current_stage()}")
            break

    match_details, _ = service.get_state()
    print(f"Protocol: {applied.name} | Stage: {service.get_current_stage()}")
    print(format_viewport_table(match_details, display_sets))
    print()
    print(format_ranking_table(service.get_display_sets_match_details()))

    if args.report:
        with open(args.report, "w") as f:
            json.dump(build_report(service), f, indent=2, default=str)
        logger.info(f"Hanging report saved to {args.report}")

    return 0


def protocols_command(args) -> int:
    """List bundled protocols and their stage counts."""
    from dicomhang.protocols import load_all_bundled_protocols

    rows = [
        [filename, protocol.id, protocol.name, len(protocol.stages)]
        for filename, protocol in load_all_bundled_protocols().items()
    ]
    print(tabulate(rows, headers=["File", "Id", "Name", "Stages"], tablefmt="simple"))
    return 0
