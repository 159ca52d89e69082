# app/constants.py
# Shared-state schema and wire constants used by both server and sync client

import re

# Keys are short identifiers
STATE_KEY_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

# Known control fields and the value types they accept.
# Any other key is allowed as long as its value is a primitive.
KNOWN_STATE_FIELDS: dict[str, tuple[type, ...]] = {
    "selectedKey": (str,),
    "selectedScale": (str,),
    "selectedChord": (str,),
    "masterVolume": (int, float),
    "tempo": (int, float),
    "isSequencerRunning": (bool,),
    "isSynchronized": (bool,),
    "showHelp": (bool,),
    "showCircleOfFifths": (bool,),
    "currentSequenceStep": (int,),
}

# Cross-tab broadcast message type
BROADCAST_STATE_UPDATE: str = "state-update"

# Length of generated session codes
SESSION_CODE_LENGTH: int = 8
