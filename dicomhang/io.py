"""
Loading of DICOM sessions and hanging protocol definitions.

- `load_dicom_session` reads DICOM headers from a directory (or in-memory
  bytes) into a pandas DataFrame, one row per instance.
- `build_study_set` turns that DataFrame into the study and display set
  mappings consumed by `HangingProtocolService.run`.
- `load_protocol` / `load_protocols` read protocol JSON files.
"""

import json
import logging
import os
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import pydicom
from pydicom.errors import InvalidDicomError
from pydicom.multival import MultiValue
from pydicom.uid import UID
from pydicom.valuerep import DSfloat, IS, PersonName

from .config import INSTANCE_FIELDS, SERIES_FIELDS, STUDY_FIELDS
from .models import Protocol, parse_protocol

logger = logging.getLogger(__name__)


def make_hashable(value):
    """
    Convert a value into a hashable format.
    Handles lists, dictionaries, and other non-hashable types.
    """
    if isinstance(value, list):
        return tuple(make_hashable(v) for v in value)
    elif isinstance(value, dict):
        return tuple((k, make_hashable(v)) for k, v in value.items())
    elif isinstance(value, set):
        return tuple(sorted(make_hashable(v) for v in value))
    return value


def to_python_value(value: Any) -> Any:
    """
    Convert a DataFrame cell back to a plain Python value: NaN becomes None,
    numpy scalars become Python scalars and tuples become lists.
    """
    if isinstance(value, tuple):
        return [to_python_value(v) for v in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def get_dicom_values(ds: pydicom.dataset.Dataset) -> Dict[str, Any]:
    """Convert a DICOM dataset to a dictionary, handling sequences and DICOM-specific data types.

    Args:
        ds (pydicom.dataset.Dataset): The DICOM dataset to process.

    Returns:
        dicom_dict (Dict[str, Any]): A dictionary of DICOM values.
    """
    dicom_dict = {}

    def process_element(element):
        if element.VR == 'SQ':
            return [get_dicom_values(item) for item in element]
        elif isinstance(element.value, MultiValue):
            try:
                return [int(float(item)) if int(float(item)) == float(item) else float(item) for item in element.value]
            except (TypeError, ValueError):
                return [str(item) for item in element.value]
        elif isinstance(element.value, (UID, PersonName)):
            return str(element.value)
        elif isinstance(element.value, (DSfloat, float)):
            return float(element.value)
        elif isinstance(element.value, (IS, int)):
            return int(element.value)
        else:
            return str(element.value)[:64]

    for element in ds:
        if element.tag == 0x7fe00010:  # skip pixel data
            continue
        if not element.keyword:
            continue
        dicom_dict[element.keyword] = process_element(element)

    return dicom_dict


def load_dicom(dicom_file: Union[str, Path, bytes]) -> Dict[str, Any]:
    """Load a DICOM file from a path or bytes and extract header values as a dictionary.

    Args:
        dicom_file (Union[str, Path, bytes]): Path to the DICOM file or file content as bytes.

    Returns:
        dicom_values (Dict[str, Any]): A dictionary of DICOM values.
    """
    if isinstance(dicom_file, (bytes, memoryview)):
        ds = pydicom.dcmread(BytesIO(dicom_file), stop_before_pixels=True)
    else:
        ds = pydicom.dcmread(dicom_file, stop_before_pixels=True)

    return get_dicom_values(ds)


def load_dicom_session(
    session_dir: Optional[str] = None,
    dicom_bytes: Optional[Dict[str, bytes]] = None,
) -> pd.DataFrame:
    """
    Read all DICOM files in a directory, or a dictionary of DICOM file contents,
    and return a single DataFrame containing their header values.

    Files that are not DICOM are skipped with a warning.

    Args:
        session_dir (Optional[str]): Path to the directory containing DICOM files.
        dicom_bytes (Optional[Dict[str, bytes]]): File paths mapped to their content.

    Returns:
        pd.DataFrame: One row per instance, sorted by InstanceNumber. The file path is kept
            in ``DICOM_Path``.

    Raises:
        ValueError: If neither source is given, or no DICOM data was found.
    """
    sources = []
    if dicom_bytes is not None:
        sources = list(dicom_bytes.items())
    elif session_dir is not None:
        for root, _, files in os.walk(session_dir):
            for file in sorted(files):
                if file.endswith((".dcm", ".IMA")) or "." not in file:
                    dicom_path = os.path.join(root, file)
                    sources.append((dicom_path, dicom_path))
    else:
        raise ValueError("Either session_dir or dicom_bytes must be provided.")

    session_data = []
    for dicom_path, dicom_content in sources:
        try:
            dicom_values = load_dicom(dicom_content)
        except (InvalidDicomError, OSError) as e:
            logger.warning(f"Skipping non-DICOM file {dicom_path}: {e}")
            continue
        dicom_values["DICOM_Path"] = str(dicom_path)
        dicom_values["InstanceNumber"] = int(dicom_values.get("InstanceNumber", 0) or 0)
        session_data.append(dicom_values)

    if not session_data:
        raise ValueError("No DICOM data found to process.")

    session_df = pd.DataFrame(session_data)

    # Ensure all values are hashable
    for col in session_df.columns:
        session_df[col] = session_df[col].apply(make_hashable)

    session_df = session_df.sort_values(["InstanceNumber", "DICOM_Path"], kind="mergesort").reset_index(drop=True)
    return session_df


def _pick_fields(row: pd.Series, fields: List[str]) -> Dict[str, Any]:
    return {field: to_python_value(row[field]) for field in fields if field in row.index}


def build_study_set(session_df: pd.DataFrame) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Group a session DataFrame into studies and display sets.

    One display set is created per SeriesInstanceUID. Studies and display sets
    keep the order in which they first appear in the DataFrame.

    Args:
        session_df (pd.DataFrame): Output of `load_dicom_session`, or any DataFrame with
            StudyInstanceUID and SeriesInstanceUID columns.

    Returns:
        Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
            - Studies, each with its study fields, ``series`` (its display sets),
              ``NumberOfStudyRelatedSeries`` and ``ModalitiesInStudy``.
            - Display sets, each with its series fields, ``displaySetInstanceUID``,
              ``images`` (sorted by InstanceNumber) and ``numImageFrames``.

    Raises:
        ValueError: If a required UID column is missing.
    """
    missing = [col for col in ("StudyInstanceUID", "SeriesInstanceUID") if col not in session_df.columns]
    if missing:
        raise ValueError(f"Session is missing required columns: {missing}")

    studies = []
    display_sets = []

    for study_uid, study_df in session_df.groupby("StudyInstanceUID", sort=False):
        study = _pick_fields(study_df.iloc[0], STUDY_FIELDS)
        study_series = []

        for series_uid, series_df in study_df.groupby("SeriesInstanceUID", sort=False):
            if "InstanceNumber" in series_df.columns:
                series_df = series_df.sort_values("InstanceNumber", kind="mergesort")

            display_set = _pick_fields(series_df.iloc[0], SERIES_FIELDS)
            display_set["displaySetInstanceUID"] = str(series_uid)
            display_set["images"] = [_pick_fields(row, INSTANCE_FIELDS) for _, row in series_df.iterrows()]
            display_set["numImageFrames"] = len(display_set["images"])

            study_series.append(display_set)
            display_sets.append(display_set)

        modalities = []
        for display_set in study_series:
            modality = display_set.get("Modality")
            if modality and modality not in modalities:
                modalities.append(modality)

        study["series"] = study_series
        study["NumberOfStudyRelatedSeries"] = len(study_series)
        study["ModalitiesInStudy"] = modalities
        studies.append(study)

    logger.info(f"Built {len(studies)} study(ies) with {len(display_sets)} display set(s)")
    return studies, display_sets


def load_protocol(protocol_path: Union[str, Path]) -> Protocol:
    """
    Load a hanging protocol from a JSON file.

    Args:
        protocol_path (Union[str, Path]): Path to the JSON file.

    Returns:
        Protocol: The parsed (not yet structurally validated) protocol.

    Raises:
        FileNotFoundError: If the file does not exist.
        JSONDecodeError: If the file is not valid JSON.
        ProtocolValidationError: If the JSON does not describe a protocol.
    """
    with open(protocol_path, "r") as f:
        protocol_data = json.load(f)
    return parse_protocol(protocol_data)


def load_protocols(paths: List[str]) -> Dict[str, Protocol]:
    """
    Load protocols from file paths or directories of JSON files.

    Files inside a directory that fail to load are skipped with a warning.

    Args:
        paths: List of file paths or directory paths containing protocol JSON files.

    Returns:
        Dict mapping protocol path -> Protocol
    """
    protocols = {}
    for path_str in paths:
        p = Path(path_str)
        if p.is_file() and p.suffix == '.json':
            protocols[str(p)] = load_protocol(p)
        elif p.is_dir():
            for json_file in sorted(p.glob("*.json")):
                if json_file.name == "index.json":
                    continue
                try:
                    protocols[str(json_file)] = load_protocol(json_file)
                except Exception as e:
                    logger.warning(f"Failed to load protocol {json_file}: {e}")
        else:
            logger.warning(f"Skipping {p}: not a JSON file or directory")
    return protocols
