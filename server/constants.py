"""
Application-wide constants for room presence, signaling limits, codec normalization,
transports and the self-test harness.
"""

# --- Room / Participant Constraints ---
#: Maximum length of a normalized room identifier.
ROOM_ID_MAX_LENGTH: int = 12
#: Maximum length allowed for display names.
USERNAME_MAX_LENGTH: int = 24
#: Maximum length allowed for instrument / role tags.
INSTRUMENT_MAX_LENGTH: int = 24
#: Display name applied when a join request omits one.
DEFAULT_USERNAME: str = "musician"
#: Instrument applied when a join request omits one.
DEFAULT_INSTRUMENT: str = "guitar"
#: Initial audio-enabled flag of every participant.
DEFAULT_AUDIO_ENABLED: bool = False

# --- Signaling ---
#: `to` value that addresses every other member of the sender's room.
BROADCAST_TARGET: str = "*"
#: Maximum length of a room-broadcast event name.
EVENT_NAME_MAX_LENGTH: int = 32
#: Maximum size (in bytes) of a JSON-encoded room-broadcast payload.
BROADCAST_PAYLOAD_MAX_BYTES: int = 4096
#: Maximum length of chat / text payloads relayed to a room.
CHAT_MESSAGE_MAX_LENGTH: int = 240
#: Event names only the server may emit.
RESERVED_EVENTS = frozenset({
    "welcome", "joined-room", "participant-joined", "presence-updated",
    "participant-left", "signal", "pong",
})

# --- SDP Codec Normalization ---
#: rtpmap encoding of the preferred codec (name/clock rate/channels).
PREFERRED_CODEC: str = "opus/48000/2"
#: Format parameters appended when the preferred codec has no fmtp line.
PREFERRED_FMTP: str = "minptime=10;useinbandfec=1;cbr=1;stereo=0;ptime=10"
#: Packet time (ms) enforced on an existing fmtp line.
PREFERRED_PTIME: int = 10

# --- Channel Transports ---
#: Maximum number of envelopes queued for one channel before it is closed.
OUTBOX_MAX_SIZE: int = 256
#: WebSocket close code used for abusive clients.
POLICY_CLOSE_CODE: int = 4008
#: Longest time (in seconds) a GET on the polling transport is held open.
POLL_WAIT_SECONDS: float = 25.0
#: Idle time (in seconds) after which an un-polled polling channel expires.
POLL_IDLE_TIMEOUT: float = 60.0
#: Interval (in seconds) between sweeps for expired polling channels.
POLL_SWEEP_INTERVAL: float = 10.0

# --- Self-Test Harness ---
#: Default bound (in milliseconds) on waiting for media in both directions.
SELFTEST_DEFAULT_TIMEOUT_MS: int = 15000
#: Upper bound accepted from HTTP callers.
SELFTEST_MAX_TIMEOUT_MS: int = 60000
#: Time (in seconds) media is left flowing before statistics are read.
SELFTEST_SETTLE_SECONDS: float = 1.0
#: Prefix of generated self-test room identifiers.
SELFTEST_ROOM_PREFIX: str = "ST"
#: Sample rate of the synthetic tone.
TONE_SAMPLE_RATE: int = 48000
#: Frequency (Hz) of the synthetic tone; a whole number of cycles fits one frame.
TONE_FREQUENCY: int = 400
#: Duration (ms) of one synthetic audio frame.
TONE_FRAME_MS: int = 20
