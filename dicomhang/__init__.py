__version__ = "0.1.0"

# Import core functionalities
from .config import EVENTS, DEFAULT_PROTOCOL_ID
from .errors import HangingProtocolError, NoProtocolAvailableError, ProtocolValidationError
from .models import Protocol, Stage, Rule, DisplaySetRuleSet, ViewportSpec, CandidateMatch, ViewportMatch, parse_protocol, validate_protocol
from .attributes import AttributeResolver, get_value
from .validation import evaluate_rule
from .matching import MatchEngine
from .stage import match_stage, match_display_sets, bind_viewport
from .extensions import ExtensionRegistry, ImageLoadStrategy, ImageLoadRequest
from .service import HangingProtocolService
from .io import load_dicom_session, build_study_set, load_protocol, load_protocols
