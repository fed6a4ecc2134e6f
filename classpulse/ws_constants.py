"""WebSocket protocol constants: message types and client-facing messages.

Pure data module -- no imports, no logic. Safe to import from any classpulse
module without risk of circular dependencies.
"""

# ── Client -> Server message types ────────────────────────────────────

MSG_CREATE_SESSION = "create_session"
MSG_JOIN_SESSION = "join_session"
MSG_FEEDBACK = "feedback"
MSG_END_SESSION = "end_session"

# ── Server -> Client message types ────────────────────────────────────

MSG_SESSION_CREATED = "session_created"
MSG_JOINED_SESSION = "joined_session"
MSG_JOIN_ERROR = "join_error"
MSG_AGGREGATE_UPDATE = "aggregate_update"
MSG_SESSION_ENDED = "session_ended"
MSG_ERROR = "error"

# ── Human-readable join errors (sent in MSG_JOIN_ERROR messages) ──────

JOIN_ERR_INVALID_CODE = "Invalid session code."
JOIN_ERR_COULD_NOT_JOIN = "Could not join session."
