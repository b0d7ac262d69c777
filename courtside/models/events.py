"""Socket event names shared by the client library and the event router."""

# Client -> server
CONVERSATION_JOIN = "conversation:join"
CONVERSATION_LEAVE = "conversation:leave"
CONVERSATION_CREATE = "conversation:create"
CONVERSATION_ARCHIVE = "conversation:archive"
CONVERSATION_LIST = "conversation:list"
CONVERSATION_GET_PARTICIPANTS = "conversation:get_participants"

MESSAGE_SEND = "message:send"
MESSAGE_EDIT = "message:edit"
MESSAGE_DELETE = "message:delete"
MESSAGE_REACT = "message:react"
MESSAGE_UNREACT = "message:unreact"
MESSAGE_READ = "message:read"
MESSAGE_SEARCH = "message:search"
MESSAGE_LIST = "message:list"

TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"

PRESENCE_UPDATE = "presence:update"
PRESENCE_GET_ONLINE_USERS = "presence:get_online_users"

NOTIFICATION_UNREAD = "notification:unread"
NOTIFICATION_READ = "notification:read"
NOTIFICATION_READ_ALL = "notification:read_all"
NOTIFICATION_GET_UNREAD_COUNT = "notification:get_unread_count"

# Server -> client
ACK = "ack"
CONNECTED = "connected"

MESSAGE_NEW = "message:new"
MESSAGE_UPDATED = "message:updated"
MESSAGE_EDITED = "message:edited"
MESSAGE_DELETED = "message:deleted"
MESSAGE_READ_BY = "message:read_by"
MESSAGE_REACTION_ADDED = "message:reaction_added"
MESSAGE_REACTION_REMOVED = "message:reaction_removed"

CONVERSATION_NEW = "conversation:new"
CONVERSATION_UPDATED = "conversation:updated"
CONVERSATION_USER_JOINED = "conversation:user_joined"
CONVERSATION_USER_LEFT = "conversation:user_left"

TYPING_USER_STARTED = "typing:user_started"
TYPING_USER_STOPPED = "typing:user_stopped"

PRESENCE_USER_STATUS_CHANGED = "presence:user_status_changed"
PRESENCE_STATUS_SYNC = "presence:status_sync"

NOTIFICATION_NEW = "notification:new"

SYSTEM_MESSAGE = "system:message"
SYSTEM_SHUTDOWN = "system:shutdown"

# Heartbeat frames (bare text, not JSON)
PING = "ping"
PONG = "pong"
