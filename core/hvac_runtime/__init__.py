"""HVAC runtime session tracking package."""

# Define public API
__all__ = [
    "AppConfig",
    "CanonicalReading",
    "ChangeGate",
    "DeviceSessionState",
    "EngineSettings",
    "EquipmentLabel",
    "RuntimeEngine",
    "RuntimeSessionRecord",
    "SessionStateMachine",
    "infer_activity",
    "load_config",
    "normalize_event",
    "recover_sessions",
]

# Import settings
from .settings import AppConfig, EngineSettings, load_config

# Import models
from .models import CanonicalReading, DeviceSessionState, EquipmentLabel, RuntimeSessionRecord

# Import engine components
from .normalizer import normalize_event
from .inference import infer_activity
from .session_machine import SessionStateMachine
from .change_gate import ChangeGate
from .recovery import recover_sessions
from .engine import RuntimeEngine
