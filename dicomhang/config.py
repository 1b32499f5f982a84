"""
Configuration constants for dicomhang.

This module contains event names, built-in attribute identifiers, default
field lists and sort settings used throughout the dicomhang package.
"""

# Events broadcast by the hanging protocol service
EVENTS = {
    "STAGE_CHANGE": "event::hanging_protocol_stage_change",
    "NEW_LAYOUT": "event::hanging_protocol_new_layout",
    "CUSTOM_IMAGE_LOAD_PERFORMED": "event::hanging_protocol_custom_image_load_performed",
}

# Protocol used when no registered protocol scores above zero
DEFAULT_PROTOCOL_ID = "default"

# Built-in custom attributes and their display names
BUILTIN_ATTRIBUTE_NAMES = {
    "NumberOfStudyRelatedSeries": "The number of series in the study",
    "NumberOfSeriesRelatedInstances": "The number of instances in the display set",
    "ModalitiesInStudy": "Gets the array of the modalities for the series",
}

# Candidate ranking: (sortingInfo key, ascending)
SORT_ORDER = [
    ("score", False),
    ("study", False),
    ("series", True),
]

# Study-level fields copied from the first instance of each study
STUDY_FIELDS = [
    "StudyInstanceUID",
    "StudyDate",
    "StudyTime",
    "StudyDescription",
    "AccessionNumber",
    "PatientID",
    "PatientName",
    "PatientSex",
    "PatientAge",
    "InstitutionName",
]

# Series-level fields copied from the first instance of each display set
SERIES_FIELDS = [
    "StudyInstanceUID",
    "SeriesInstanceUID",
    "SeriesNumber",
    "SeriesDescription",
    "SeriesDate",
    "SeriesTime",
    "Modality",
    "BodyPartExamined",
    "ProtocolName",
    "Laterality",
    "ViewPosition",
    "ImageType",
    "SliceThickness",
    "Manufacturer",
]

# Instance-level fields kept for each image of a display set
INSTANCE_FIELDS = [
    "SOPInstanceUID",
    "SOPClassUID",
    "InstanceNumber",
    "ImageType",
    "Rows",
    "Columns",
    "NumberOfFrames",
    "DICOM_Path",
]
