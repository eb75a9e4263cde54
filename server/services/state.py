# services/state.py
from handlers.relay import SignalingRelay
from services.registry import PresenceRegistry

# ----------------------------------------------------------------------------
# Process-wide presence and relay state
# ----------------------------------------------------------------------------

# Only shared mutable state in the process; safe without locks because every
# handler runs on the single asyncio event loop.
registry = PresenceRegistry()

# Relay bound to the registry; owns the per-connection session records.
relay = SignalingRelay(registry)
