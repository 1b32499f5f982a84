"""
Hanging protocols shipped with dicomhang.

``default.json`` hangs the first display set with at least one frame in a
single viewport and is the fallback when no protocol matches.
``ct_multiphase.json`` compares CT series side by side over two stages.
"""

from pathlib import Path
from typing import Dict, List

from ..io import load_protocol, load_protocols
from ..models import Protocol

PROTOCOLS_DIR = Path(__file__).parent


def list_bundled_protocols() -> List[str]:
    """Filenames of the bundled protocols, sorted."""
    return sorted(p.name for p in PROTOCOLS_DIR.glob("*.json"))


def get_bundled_protocol_path(filename: str) -> Path:
    """
    Args:
        filename (str): A bundled protocol filename, e.g. "default.json".

    Raises:
        FileNotFoundError: If no bundled protocol has that filename.
    """
    path = PROTOCOLS_DIR / filename
    if not path.is_file():
        raise FileNotFoundError(f"No bundled hanging protocol named {filename}")
    return path


def load_bundled_protocol(filename: str) -> Protocol:
    return load_protocol(get_bundled_protocol_path(filename))


def load_all_bundled_protocols() -> Dict[str, Protocol]:
    """
    Load every bundled protocol. Files that fail to load are skipped with a warning.

    Returns:
        Dict[str, Protocol]: Filename to protocol, in filename order.
    """
    return {Path(path).name: protocol for path, protocol in load_protocols([str(PROTOCOLS_DIR)]).items()}
