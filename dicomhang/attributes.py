"""
Attribute resolution for matching rules.

A rule names an attribute such as ``Modality`` or ``ModalitiesInStudy``. The
value is either read straight from the study, display set or instance, or
computed by a custom attribute callback registered under that name.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from .config import BUILTIN_ATTRIBUTE_NAMES

logger = logging.getLogger(__name__)


def get_value(subject: Any, attribute_id: str) -> Any:
    """
    Read an attribute from a mapping-like or object-like subject.

    Args:
        subject (Any): A study, display set or instance. Dicts, pandas rows and plain
            objects are supported.
        attribute_id (str): The attribute name (usually a DICOM keyword).

    Returns:
        Any: The value, or None if the subject does not carry it.
    """
    if subject is None:
        return None
    if isinstance(subject, Mapping) or (hasattr(subject, "get") and hasattr(subject, "keys")):
        return subject.get(attribute_id)
    return getattr(subject, attribute_id, None)


@dataclass
class CustomAttribute:
    id: str
    name: str
    callback: Callable[[Any, Optional[Dict[str, Any]]], Any]
    options: Dict[str, Any] = field(default_factory=dict)


def number_of_study_related_series(subject, context=None):
    value = get_value(subject, "NumberOfStudyRelatedSeries")
    if value is not None:
        return value
    series = get_value(subject, "series")
    return len(series) if series is not None else None


def number_of_series_related_instances(subject, context=None):
    value = get_value(subject, "numImageFrames")
    if value is not None:
        return value
    images = get_value(subject, "images")
    return len(images) if images is not None else None


def modalities_in_study(subject, context=None):
    value = get_value(subject, "ModalitiesInStudy")
    if value is not None:
        return value
    modalities = []
    for series in get_value(subject, "series") or []:
        modality = get_value(series, "Modality")
        if modality and modality not in modalities:
            modalities.append(modality)
    return modalities


def default_custom_attributes() -> Dict[str, CustomAttribute]:
    callbacks = {
        "NumberOfStudyRelatedSeries": number_of_study_related_series,
        "NumberOfSeriesRelatedInstances": number_of_series_related_instances,
        "ModalitiesInStudy": modalities_in_study,
    }
    return {
        attribute_id: CustomAttribute(id=attribute_id, name=BUILTIN_ATTRIBUTE_NAMES[attribute_id], callback=callback)
        for attribute_id, callback in callbacks.items()
    }


class AttributeResolver:
    """Resolves rule attributes, preferring registered custom attributes.

    The resolver keeps a reference to the attribute table it is given, so
    attributes registered later on that table are picked up without
    rebuilding the resolver.
    """

    def __init__(self, custom_attributes: Optional[Dict[str, CustomAttribute]] = None):
        self.custom_attributes = default_custom_attributes() if custom_attributes is None else custom_attributes

    def resolve(self, attribute_id: str, subject: Any, context: Optional[Dict[str, Any]] = None) -> Any:
        """
        Resolve an attribute value for a subject.

        A custom attribute callback that raises is logged and treated as a
        missing value, so the rule using it fails instead of aborting the hanging.

        Returns:
            Any: The value, or None when it is missing or could not be computed.
        """
        custom_attribute = self.custom_attributes.get(attribute_id)
        if custom_attribute is None:
            return get_value(subject, attribute_id)
        try:
            return custom_attribute.callback(subject, context)
        except Exception as e:
            logger.warning(f"Custom attribute '{attribute_id}' failed: {e}")
            return None
