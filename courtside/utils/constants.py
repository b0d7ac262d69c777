"""
Constants shared by the realtime client and the event router.
"""

# Content written into a soft-deleted message
DELETED_MESSAGE_PLACEHOLDER = "This message was deleted"

# Length of the denormalized last-message preview on a conversation
MESSAGE_PREVIEW_LENGTH = 100

# Typing coordination (seconds)
TYPING_QUIET_PERIOD = 1.0  # trailing stop after this much keyboard inactivity
TYPING_HARD_CAP = 3.0  # forced stop even while the user keeps typing
TYPING_INDICATOR_TTL = 5.0  # remote indicator expiry without renewal

# Connection policy
REQUEST_TIMEOUT_SECONDS = 15.0
RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY_SECONDS = 1.0
RECONNECT_DELAY_MAX_SECONDS = 5.0
RECONNECT_RANDOMIZATION = 0.5
HEARTBEAT_INTERVAL_SECONDS = 25.0
CONNECT_TIMEOUT_SECONDS = 10.0

# WebSocket close code used when the handshake token is rejected
POLICY_VIOLATION_CLOSE_CODE = 1008

# History page size fetched on join / rejoin
HISTORY_PAGE_SIZE = 50

# Presence: server-side stale sweep
PRESENCE_STALE_AFTER_SECONDS = 300.0
PRESENCE_SWEEP_INTERVAL_SECONDS = 60.0

# Server heartbeat: ping after this much client silence
SERVER_HEARTBEAT_TIMEOUT_SECONDS = 30.0

# Notification list page size
NOTIFICATION_PAGE_SIZE = 20
