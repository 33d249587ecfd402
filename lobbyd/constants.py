# Lobby protocol constants (frame types, field names, capabilities)

# Frame types
T_REGISTER = "register"
T_CHAT = "chat"
T_BLOCK = "block"
T_UNBLOCK = "unblock"
T_SYSTEM = "system"
T_LISTENER_COUNT = "listenerCount"

INBOUND_TYPES = frozenset({T_REGISTER, T_CHAT, T_BLOCK, T_UNBLOCK})

# Frame fields
F_TYPE = "type"
F_CLIENT_ID = "clientId"
F_USERNAME = "username"
F_MESSAGE = "message"
F_TARGET = "targetClientId"
F_TIMESTAMP = "timestamp"
F_COUNT = "count"

# Capabilities
CAP_CHAT_SEND = "chat.send"
CAP_CHAT_MODERATE = "chat.moderate"
CAP_ADMIN_PANEL = "admin.panel"
CAP_ADMIN_USERS = "admin.users"
CAP_ADMIN_ROLES = "admin.roles"

# Default role table written on first run.
DEFAULT_ROLES: dict[str, tuple[str, ...]] = {
    "user": (CAP_CHAT_SEND,),
    "moderator": (CAP_CHAT_SEND, CAP_CHAT_MODERATE),
    "admin": (
        CAP_CHAT_SEND,
        CAP_CHAT_MODERATE,
        CAP_ADMIN_PANEL,
        CAP_ADMIN_USERS,
        CAP_ADMIN_ROLES,
    ),
}

DEFAULT_BLOCK_REASON = "blocked by moderator"

# Notice texts
N_DEVICE_BLOCKED = "This device is blocked. Contact the administrator."
N_CHAT_BLOCKED = "You cannot send messages. This device is blocked."
N_BLOCKED_BY_MODERATOR = "You have been blocked by a moderator."
N_SESSION_REPLACED = "Session replaced by a new connection."
N_FORBIDDEN = "You do not have permission to perform this action."
N_MODERATION_FAILED = "Failed to process the moderation action."
N_RATE_LIMITED = "rate limited"
N_MESSAGE_TOO_LARGE = "Message too long to deliver. Send a shorter message."
N_USER_BLOCKED = "A user was blocked by a moderator"
N_USER_UNBLOCKED = "A user was unblocked by a moderator"

NICK_MAX_CHARS = 32
CLIENT_ID_MAX_CHARS = 128
