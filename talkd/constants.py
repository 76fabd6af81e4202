# talk protocol constants (numeric keys and message types)

TALK_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_ROOM = 5
K_BODY = 6

# Message types
T_JOIN = 10
T_JOINED = 11
T_PART = 12
T_PARTED = 13

T_KEY = 20
T_EVENT = 21

T_ERROR = 40

# JOIN body keys
B_JOIN_SESSION = 0

# JOINED body keys
B_JOINED_SESSION = 0
B_JOINED_PARTICIPANTS = 1
B_JOINED_OTHERS = 2
B_JOINED_REPLAY = 3
B_JOINED_THEIR = 4

# Other participant ids listed in JOINED; keeps the reply within one link packet.
JOINED_OTHERS_MAX = 8

# EVENT body keys
B_EV_SEQ = 0
B_EV_SENDER = 1
B_EV_KIND = 2
B_EV_PAYLOAD = 3
B_EV_TS = 4

# Character event kinds (string values, also the persisted form)
EV_CHAR = "char"
EV_BACKSPACE = "backspace"
EV_NEWLINE = "newline"
EV_CLEAR = "clear"

EVENT_KINDS = frozenset({EV_CHAR, EV_BACKSPACE, EV_NEWLINE, EV_CLEAR})

IDLE_THRESHOLD_S = 12 * 3600
ROOM_ID_MAX_CHARS = 64
