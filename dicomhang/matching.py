"""
Rule aggregation and protocol selection.

`MatchEngine.find_match` scores a subject against a list of rules;
`MatchEngine.select_protocol` applies the same scoring to each registered
protocol's ``protocolMatchingRules`` to pick the protocol to hang.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .attributes import AttributeResolver
from .config import DEFAULT_PROTOCOL_ID
from .errors import NoProtocolAvailableError
from .models import MatchDetails, MatchResult, Protocol, Rule
from .validation import evaluate_rule

logger = logging.getLogger(__name__)


class MatchEngine:

    def __init__(self, resolver: Optional[AttributeResolver] = None):
        self.resolver = resolver or AttributeResolver()

    def find_match(
        self,
        subject: Any,
        rules: Sequence[Rule],
        context: Optional[Dict[str, Any]] = None
    ) -> MatchResult:
        """
        Evaluate every rule against a subject and aggregate the results.

        Args:
            subject (Any): The study or display set to score.
            rules (Sequence[Rule]): Rules to evaluate.
            context (Optional[Dict[str, Any]]): Passed through to attribute resolution.

        Returns:
            MatchResult: The summed weight of passing rules, whether any required rule
                failed, and the passed/failed rule results. The score is computed even
                when a required rule failed; callers discard such candidates.
        """
        details = MatchDetails()
        score = 0
        required_failed = False

        for rule in rules:
            result = evaluate_rule(rule, subject, context, self.resolver)
            if result.passed:
                score += result.score
                details.passed.append(result)
            else:
                if rule.required:
                    required_failed = True
                details.failed.append(result)

        return MatchResult(score=score, required_failed=required_failed, details=details)

    def rank_protocols(
        self,
        protocols: Sequence[Protocol],
        studies: Sequence[Any],
        active_study: Any = None,
        display_sets: Optional[Sequence[Any]] = None
    ) -> List[Tuple[float, Protocol]]:
        """
        Score registered protocols against the active study.

        Protocols whose required rules fail, or that score zero, are left out.
        The result is sorted by score, highest first; equal scores keep
        registration order.

        Returns:
            List[Tuple[float, Protocol]]: (score, protocol) pairs.
        """
        study = active_study if active_study is not None else (studies[0] if studies else None)
        context = {"studies": list(studies), "displaySets": list(display_sets or [])}

        matched = []
        for protocol in protocols:
            result = self.find_match(study, protocol.protocol_matching_rules, context)
            if result.required_failed:
                logger.debug(f"Protocol '{protocol.id}' excluded: required rule failed")
                continue
            if result.score > 0:
                matched.append((result.score, protocol))

        matched.sort(key=lambda m: m[0], reverse=True)
        return matched

    def select_protocol(
        self,
        protocols: Sequence[Protocol],
        studies: Sequence[Any],
        active_study: Any = None,
        display_sets: Optional[Sequence[Any]] = None
    ) -> Protocol:
        """
        Pick the protocol to hang for the given studies.

        Args:
            protocols (Sequence[Protocol]): Registered protocols, in registration order.
            studies (Sequence[Any]): All studies being hung.
            active_study (Any): The primary study; defaults to the first study.
            display_sets (Optional[Sequence[Any]]): All display sets of the studies.

        Returns:
            Protocol: The highest scoring protocol. When none scores, the protocol with
                id ``default`` if registered, otherwise the first registered protocol.

        Raises:
            NoProtocolAvailableError: If no protocols are registered.
        """
        if not protocols:
            raise NoProtocolAvailableError("No hanging protocols are registered.")

        matched = self.rank_protocols(protocols, studies, active_study, display_sets)
        if matched:
            score, protocol = matched[0]
            logger.info(f"Selected hanging protocol '{protocol.id}' (score {score})")
            return protocol

        protocol = next((p for p in protocols if p.id == DEFAULT_PROTOCOL_ID), protocols[0])
        logger.info(f"No protocol matched; falling back to '{protocol.id}'")
        return protocol
